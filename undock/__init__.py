"""Undock - Extract contents of a container image in a local folder.

This package fetches a container image from a registry, the local Docker
daemon or an on-disk archive/layout into a content-addressed cache and
unpacks its layers into a plain directory tree, without a container engine.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
