"""Remote API clients and response schemas."""
