"""SQLite storage layer for the RPC job queue."""
