"""
File Conversion Service package.

This module provides a FastAPI application that accepts uploads, converts them
in the background (documents, images, audio, video, archives) and exposes
status polling and download endpoints.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
