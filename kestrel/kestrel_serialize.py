from __future__ import annotations

import json
import re
from typing import Any, Optional

import yaml

from kestrel.kestrel_datatypes import from_native, to_native


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        try:
            return data.decode(encoding or 'utf-8', errors='replace')
        except LookupError:
            # unknown charset label
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml', or None when the format cannot be told.
    Uses Content-Type first; falls back to sniffing the data.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data (bytes/string) to plain Python structures.
    Supported fmt: 'json', 'yaml'. If fmt is None, uses content_type, then
    sniffing; unknown formats come back as text. Malformed documents raise
    ValueError.
    """
    text = _norm_text(data, encoding=_encoding_from_content_type(content_type))
    f = fmt or detect_format(content_type, text)
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON: {e}") from e
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML: {e}") from e
    return text


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """Convert a plain Python value into 'json' or 'yaml' text."""
    f = (fmt or '').lower()
    if f == 'json':
        return json.dumps(value, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(value, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


# --------------------------
# Kestrel objects
# --------------------------

def marshal_json(obj, pretty: bool = False) -> str:
    """JSON text for a Kestrel object; Hash keys keep their insertion order."""
    return serialize(to_native(obj), fmt='json', pretty=pretty)


def unmarshal_json(text: str):
    """Kestrel object for a JSON document; objects become ordered Hashes."""
    return from_native(deserialize(text, fmt='json'))


def marshal_yaml(obj) -> str:
    return serialize(to_native(obj), fmt='yaml')


def unmarshal_yaml(text: str):
    return from_native(deserialize(text, fmt='yaml'))


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "marshal_json",
    "unmarshal_json",
    "marshal_yaml",
    "unmarshal_yaml",
]
