"""Bundled descriptor templates (JSON)."""
