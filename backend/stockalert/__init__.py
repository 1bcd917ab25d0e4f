"""Stock alert threshold engine."""

__version__ = "0.1.0"
