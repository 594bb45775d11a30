"""taskwarden: process monitoring and control daemon."""

__version__ = "0.1.0"
