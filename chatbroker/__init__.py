"""chatbroker - metered, streaming chat broker over multiple LLM providers."""

__version__ = "0.1.0"
