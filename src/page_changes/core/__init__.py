"""Change tracking core: diffing, baselines, persistence and the recording service."""
