"""Marketplace provider integrations."""
