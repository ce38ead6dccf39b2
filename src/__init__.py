# src/__init__.py — v1
"""aetherbuild — staged, resumable OS image builder with versioned patch management."""

from aetherbuild.version import __version__

__all__ = ["__version__"]
