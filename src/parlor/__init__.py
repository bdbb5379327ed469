"""Parlor: end-to-end encrypted direct messaging with realtime delivery."""

__version__ = "0.1.0"
