"""
VodPipe - Multipart Video Ingest and HLS Packaging Pipeline
"""

__version__ = "1.0.0"
