"""Citadel admin backend."""
