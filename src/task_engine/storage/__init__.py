"""SQLite storage for tasks, runs, console logs and agent sessions."""
