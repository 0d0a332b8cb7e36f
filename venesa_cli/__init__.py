"""Venesa command-line helpers (configuration loading)."""
