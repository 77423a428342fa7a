"""Asynchronous AI inference task pipeline."""

__version__ = "0.1.0"
