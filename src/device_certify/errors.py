"""Exception types raised by the certification engine."""

from __future__ import annotations


class CertifyError(Exception):
    """Base class for engine errors."""


class ConfigurationError(CertifyError, ValueError):
    """Invalid run configuration or input file.

    Always raised before any request is transmitted.
    """
