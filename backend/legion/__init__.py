"""Legion chat client core and gateway."""

__version__ = "0.1.0"
