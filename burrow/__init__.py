"""Burrow - expose private HTTP services through a public relay."""

__version__ = "0.1.0"
