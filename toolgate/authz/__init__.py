"""Authorization / policy layer (env/ConfigMap driven).

Admins control the tool-calling path from here:
- master switch and dry-run default
- which privileged operation families are published
- which profile roles count as administrative
- caps/redaction settings

Per-table access levels live in the capability catalog, not here.
"""
