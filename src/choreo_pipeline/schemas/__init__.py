"""Bundled JSON Schema artifacts."""
