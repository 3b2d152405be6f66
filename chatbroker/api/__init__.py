"""HTTP surface: chat, memory, model catalog and health endpoints."""
