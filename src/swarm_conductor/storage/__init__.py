"""SQLite engine, table models, and schema migrations."""
