"""Mining proxy building blocks: configuration, per-connection statistics and a monitoring API."""

__version__ = "0.2.4"
__all__ = ["__version__"]