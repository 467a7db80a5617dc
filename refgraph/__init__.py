"""Reference-graph retrieval, caching, enrichment, and related-paper ranking for INSPIRE-HEP."""

__version__ = "0.1.0"
