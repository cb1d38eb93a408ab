"""Resilient dispatch layer for chat completions across interchangeable LLM providers."""

__version__ = "0.1.0"
