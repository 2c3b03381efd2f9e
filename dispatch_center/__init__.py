"""AI dispatch center: routes generation requests across OpenAI-compatible providers."""

__version__ = "0.1.0"
