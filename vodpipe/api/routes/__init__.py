"""
API routes for VodPipe
"""

from . import health, videos

__all__ = ["health", "videos"]
