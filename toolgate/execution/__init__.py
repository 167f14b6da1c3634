"""Validate, execute (or dry-run) and audit one operation call."""
