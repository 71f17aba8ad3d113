"""Identity fingerprints used as ledger keys."""

from __future__ import annotations

from typing import Any, Optional

FNV32_OFFSET_BASIS = 0x811C9DC5
FNV32_PRIME = 0x01000193


def hash_identity(identity: Any) -> str:
    """32-bit FNV-1a over UTF-16 code units, as 8 lowercase hex digits.

    Hashing code units (not UTF-8 bytes) keeps keys identical to the ones the
    existing ledgers were written with.
    """
    data = str(identity).encode("utf-16-le", "surrogatepass")
    h = FNV32_OFFSET_BASIS
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * FNV32_PRIME) & 0xFFFFFFFF
    return f"{h:08x}"


def clean_identity(value: Any) -> Optional[str]:
    """Return a stripped identity string, or None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        value = str(int(value)) if float(value).is_integer() else str(value)
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s or None
