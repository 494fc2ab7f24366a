"""Storage layer: SQLModel tables, engine policy, migrations."""
