"""Conversational turns.

Routes each turn and then either:
- answers directly (chat or screenshot analysis), or
- runs a bounded tool-calling loop over the operations the actor may use
"""
