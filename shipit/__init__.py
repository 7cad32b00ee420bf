"""Continuous build and deployment of a website repository."""

__version__ = "0.1.0"
