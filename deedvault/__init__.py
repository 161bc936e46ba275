"""
DeedVault - Document Integrity Service
Chunked upload, content fingerprinting and verification for deed records.
"""

__version__ = "1.0.0"
