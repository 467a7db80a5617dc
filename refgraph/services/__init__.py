"""Service-layer modules: rate limiting, filtering, enrichment, ranking, and the view facade."""
