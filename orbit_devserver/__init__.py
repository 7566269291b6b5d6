"""Orbit development server with hot module reload."""

__version__ = "0.1.0"
