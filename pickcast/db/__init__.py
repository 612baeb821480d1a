"""Database layer: async engine, portable column types, ORM models."""
