"""Configuration, settings, logging, errors, and entry models."""
