"""Page Changes - change tracking and undo for agent runs over a page tree."""

__version__ = "0.1.0"
