"""Hook entry points for run lifecycle and file watcher events."""
