"""Core session engine: parsing, state, audit and execution."""

__all__ = []
