"""Shared utilities: logging, size formatting and observer registries."""
