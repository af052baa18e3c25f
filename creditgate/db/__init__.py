"""Database layer - ORM models, sessions and migrations."""
