"""INTERN - local indexing and retrieval over personal note archives."""

__version__ = "0.3.0"
