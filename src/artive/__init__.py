"""Artive: streaming AI rewrite engine for stashed content materials."""

__version__ = "0.1.0"
