"""SQLite persistence for executions, results and cached analyses."""
