"""Densify: context densification through LLM backends."""

__version__ = "0.1.0"
