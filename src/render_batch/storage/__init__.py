"""SQLite storage: engine policy, migrations and ORM tables."""
