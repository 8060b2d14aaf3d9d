"""Typed models shared across the engine."""
