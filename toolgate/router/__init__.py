"""Two-stage turn routing (keyword heuristics, then an optional LLM classifier)."""
