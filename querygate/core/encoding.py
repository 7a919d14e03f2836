# querygate/core/encoding.py
"""
RESULT ENCODING - Rows → opaque byte stream

Layout (bit-exact):

    0x7F                                   magic
    per row:
        0x01                               row start
        per field:
            key bytes XOR 0xAA             obfuscated column name
            0x1F                           key/value separator
            0x02 | 0x03 | 0x04             INT | FLOAT | STRING
            8 bytes LE (INT, FLOAT) or raw UTF-8 (STRING)
            0x1E                           field end
        0x00                               row end
    sha256(buffer)[:4]                     checksum

If compression is on and the buffer (checksum included) is over 1 KiB, the
whole thing is run through zlib (or gzip).

This is obfuscation, not encryption: anyone who knows the layout can read it.
"""

import gzip
import hashlib
import struct
import zlib
from typing import Any, Dict, List

MAGIC = 0x7F
ROW_START = 0x01
ROW_END = 0x00
KEY_VALUE_SEPARATOR = 0x1F
FIELD_END = 0x1E
KEY_MASK = 0xAA

TYPE_INT = 0x02
TYPE_FLOAT = 0x03
TYPE_STRING = 0x04

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

CHECKSUM_SIZE = 4
COMPRESSION_THRESHOLD = 1024


def obfuscate_key(key: str) -> bytes:
    return bytes(b ^ KEY_MASK for b in key.encode("utf-8"))


def encode_value(value: Any) -> bytes:
    # bool is an int subclass, so it lands in the INT branch.
    # Integers that do not fit a signed 64-bit slot are sent as their digits.
    if isinstance(value, int) and INT64_MIN <= value <= INT64_MAX:
        return bytes([TYPE_INT]) + struct.pack("<q", value)
    if isinstance(value, float):
        return bytes([TYPE_FLOAT]) + struct.pack("<d", value)
    return bytes([TYPE_STRING]) + str(value).encode("utf-8")


def encode_rows(rows: List[Dict[str, Any]]) -> bytes:
    """Serialize rows and append the checksum (no compression)."""
    buf = bytearray([MAGIC])

    for row in rows:
        buf.append(ROW_START)
        for key, value in row.items():
            buf += obfuscate_key(key)
            buf.append(KEY_VALUE_SEPARATOR)
            buf += encode_value(value)
            buf.append(FIELD_END)
        buf.append(ROW_END)

    buf += hashlib.sha256(buf).digest()[:CHECKSUM_SIZE]
    return bytes(buf)


def compress_data(data: bytes, algorithm: str = "zlib") -> bytes:
    if algorithm == "gzip":
        return gzip.compress(data)
    if algorithm == "zlib":
        return zlib.compress(data)
    return data


def encrypt_result(
    rows: List[Dict[str, Any]], compress: bool, algorithm: str = "zlib"
) -> bytes:
    encoded = encode_rows(rows)
    if compress and len(encoded) > COMPRESSION_THRESHOLD:
        return compress_data(encoded, algorithm)
    return encoded


def verify_checksum(encoded: bytes) -> bool:
    """Check an uncompressed stream's trailing checksum."""
    if len(encoded) < 1 + CHECKSUM_SIZE or encoded[0] != MAGIC:
        return False
    body, checksum = encoded[:-CHECKSUM_SIZE], encoded[-CHECKSUM_SIZE:]
    return hashlib.sha256(body).digest()[:CHECKSUM_SIZE] == checksum
