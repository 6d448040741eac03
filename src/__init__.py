"""Incurio: daily curiosity sparks with similarity-gated generation."""

__version__ = "0.3.0"
