"""
Common building blocks for persist-plus.

Modules:
- crypto: Password-based AES-GCM / XSalsa20 envelopes
- compression: zlib/gzip text compression with tagged blobs
"""

__all__ = [
    "compression",
    "crypto",
]
