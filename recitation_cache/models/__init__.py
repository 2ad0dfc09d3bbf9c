"""Immutable data models for cached verses, audio and cache state."""
