"""Application version information."""

APP_VERSION = "0.2.0"

__all__ = ["APP_VERSION"]
