"""Bulwark request-defense service."""
