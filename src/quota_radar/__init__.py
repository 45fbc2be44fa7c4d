"""Quota telemetry monitor for the local Antigravity language server."""

__version__ = "0.4.0"
