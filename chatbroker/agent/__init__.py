"""LLM-facing layer: provider adapters, routing and reasoning scrubbing."""
