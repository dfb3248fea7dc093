"""
Value encoding for cache backends.

Values are stored as JSON text. When compression is enabled and the JSON is
longer than the threshold, the text is zlib-compressed, base64-encoded and
tagged with ``zlib:`` (no JSON document starts with ``z``). Numbers stay plain
JSON so backends can increment them in place.

Compression and decompression never fail a cache call: on error the codec
logs and falls back to the uncompressed or raw text.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import zlib
from typing import Any

logger = logging.getLogger(__name__)

COMPRESSED_TAG = "zlib:"


class ValueCodec:
    def __init__(self, *, compress: bool = True, threshold: int = 1024):
        self.compress = compress
        self.threshold = threshold

    def encode(self, value: Any) -> str:
        text = json.dumps(value, default=str, separators=(",", ":"))
        if not self.compress or len(text.encode("utf-8")) <= self.threshold:
            return text
        try:
            packed = zlib.compress(text.encode("utf-8"))
        except zlib.error as e:
            logger.warning("Cache compression failed, storing uncompressed: %s", e)
            return text
        return COMPRESSED_TAG + base64.b64encode(packed).decode("ascii")

    def decode(self, raw: str | bytes | None) -> Any:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if raw.startswith(COMPRESSED_TAG):
            try:
                raw = zlib.decompress(base64.b64decode(raw[len(COMPRESSED_TAG) :])).decode("utf-8")
            except (binascii.Error, zlib.error, UnicodeDecodeError) as e:
                logger.warning("Cache decompression failed, returning raw value: %s", e)
                return raw
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
