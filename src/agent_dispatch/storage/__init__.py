"""SQLite storage helpers and ORM tables."""
