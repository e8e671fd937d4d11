"""HTTP surface: OpenAI-compatible completions plus health, models and stats."""
