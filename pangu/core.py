"""Core primitives for the pangu wallet client.

This module provides the small utilities used throughout the package:
- SHA-256 hashing (raw digest and hex)
- Base64 helpers matching the peer's byte-slice encoding
- YAML/JSON loading with consistent encoding
- Path resolution relative to the package root

Design principles:
- Pure functions where possible
- No global mutable state
"""

from __future__ import annotations

import base64
import hashlib
import json
import pathlib
from typing import Any, Optional, Sequence, Union

import yaml

# Package root, computed once at module load
PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent
SCHEMAS_DIR = PACKAGE_ROOT / "schemas"


def sha256_digest(data: bytes) -> bytes:
    """Compute the raw 32-byte SHA-256 digest."""
    return hashlib.sha256(data).digest()


def sha256_hex(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def b64encode(data: bytes) -> str:
    """Standard padded base64, the encoding used for byte slices on the wire."""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def coerce_bytes(value: Union[None, bytes, bytearray, str, Sequence[int]]) -> Optional[bytes]:
    """Accept the shapes a byte field arrives in: bytes, base64 text, int list."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return b64decode(value)
    return bytes(int(b) & 0xFF for b in value)


def hex_to_int(text: str) -> int:
    """Parse a hex string with or without 0x prefix; empty means zero."""
    text = (text or "").strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    return int(text, 16) if text else 0


def int_to_hex(value: int, width: int = 64) -> str:
    return format(value, "x").zfill(width)


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
