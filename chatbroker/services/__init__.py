"""Domain services: persistence collaborator, memory engine and chat orchestration."""
