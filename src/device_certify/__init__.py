"""Certification engine for the display UDP control protocol."""

__version__ = "0.3.0"
