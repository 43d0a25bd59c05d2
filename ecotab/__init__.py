"""Microbial community table analysis: merging, filtering, repeated rarefaction, diversity and ordination."""

__version__ = "0.1.0"
