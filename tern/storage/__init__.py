"""SQLite persistence for sessions, messages, plans and audit events."""
