"""Tunnel restriction rules with YAML loading, live reload and socket marks."""

__version__ = "10.4.3"

__all__ = ["__version__"]