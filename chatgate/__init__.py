"""Rate-limiting, validating chat proxy for hosted LLM inference."""

__version__ = "0.1.0"
