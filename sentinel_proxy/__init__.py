"""Usage tracking for an AI proxy: direct and batched reporting of token usage."""

__version__ = "0.1.0"