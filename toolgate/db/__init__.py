"""Postgres access: connection config and schema migrations."""
