"""SQLite storage for jobs, ledger and credentials."""
