"""Entrypoint and sidecar utilities for CI job pods."""

__version__ = "0.1.0"
