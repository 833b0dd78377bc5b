"""Bulwark application package."""
