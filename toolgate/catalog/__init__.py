"""Capability catalog: which tables are exposed to the assistant, and their columns."""
