"""Pull-side synchronization: per-store cursors and orchestration."""
