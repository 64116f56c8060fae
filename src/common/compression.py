"""
Lossless text compression with an explicit format tag.

Compressed output is plain ASCII (deflate/gzip bytes, base64-encoded), so it
survives any string-valued backing store.

Usage:
    from common.compression import pack, unpack

    blob = pack(json_text, CompressionOptions(min_size=512))
    original = unpack(blob)

`pack` always prefixes a tag ("zlib:", "gzip:" or "raw:"), and `unpack`
dispatches on that tag only. Untagged input raises CompressionError.
"""
from __future__ import annotations

import base64
import binascii
import gzip
import json
import logging
import zlib
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)

DEFAULT_MIN_SIZE = 1024

CompressionAlgorithm = Literal["zlib", "gzip"]

TAG_RAW = "raw:"
_TAGS = {"zlib": "zlib:", "gzip": "gzip:"}


class CompressionError(RuntimeError):
    """Input is not something `decompress`/`unpack` produced."""


class CompressionOptions(BaseModel):
    algorithm: CompressionAlgorithm = "zlib"
    min_size: int = Field(default=DEFAULT_MIN_SIZE, ge=0, description="Minimum length before compressing")
    level: int = Field(default=6, ge=1, le=9)


def should_compress(data: str, min_size: int = DEFAULT_MIN_SIZE) -> bool:
    return len(data) >= min_size


def compress(data: str, options: Optional[CompressionOptions] = None) -> str:
    opts = options or CompressionOptions()
    raw = data.encode("utf-8")
    if opts.algorithm == "gzip":
        packed = gzip.compress(raw, compresslevel=opts.level, mtime=0)
    else:
        packed = zlib.compress(raw, opts.level)
    return base64.b64encode(packed).decode("ascii")


def decompress(data: str, options: Optional[CompressionOptions] = None) -> str:
    opts = options or CompressionOptions()
    try:
        packed = base64.b64decode(data.encode("ascii"), validate=True)
        if opts.algorithm == "gzip":
            raw = gzip.decompress(packed)
        else:
            raw = zlib.decompress(packed)
        return raw.decode("utf-8")
    except (binascii.Error, zlib.error, OSError, EOFError, UnicodeError) as ex:
        raise CompressionError("Failed to decompress data") from ex


def compress_object(obj: Any, options: Optional[CompressionOptions] = None) -> str:
    return compress(json.dumps(obj, separators=(",", ":"), ensure_ascii=False), options)


def decompress_object(data: str, options: Optional[CompressionOptions] = None) -> Any:
    return json.loads(decompress(data, options))


def pack(data: str, options: Optional[CompressionOptions] = None) -> str:
    """Tag and (when worthwhile) compress `data`.

    Text shorter than `min_size`, or text that does not shrink, is stored
    under the raw tag.
    """
    opts = options or CompressionOptions()
    if should_compress(data, opts.min_size):
        compressed = compress(data, opts)
        if len(compressed) < len(data):
            return _TAGS[opts.algorithm] + compressed
        logger.debug("compression did not shrink %d chars; storing raw", len(data))
    return TAG_RAW + data


def unpack(blob: str) -> str:
    """Inverse of `pack`. Raises CompressionError on unknown or corrupt input."""
    if blob.startswith(TAG_RAW):
        return blob[len(TAG_RAW):]
    for algorithm, tag in _TAGS.items():
        if blob.startswith(tag):
            return decompress(blob[len(tag):], CompressionOptions(algorithm=algorithm))
    raise CompressionError("Blob carries no compression tag")


def is_packed(blob: str) -> bool:
    return blob.startswith(TAG_RAW) or any(blob.startswith(t) for t in _TAGS.values())


__all__ = [
    "CompressionError",
    "CompressionOptions",
    "compress",
    "compress_object",
    "decompress",
    "decompress_object",
    "is_packed",
    "pack",
    "should_compress",
    "unpack",
]
