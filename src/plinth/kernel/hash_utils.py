"""Hash utilities with explicit canonicalization rules for stable hashing.

Desired-state hashes are persisted in the state document and compared on
the next pass, so the output must be stable across Python versions and
environments.

Key rules:
- Object keys sorted recursively
- Arrays preserve order
- Floats BANNED (hard validation error)
- Strings normalized to NFC
- Non-JSON types forbidden
"""

import hashlib
import json
import unicodedata
from typing import Any


class CanonicalizationError(ValueError):
    """Raised when an object cannot be canonicalized."""
    pass


def _normalize_string(s: str) -> str:
    """Normalize string to NFC (Unicode Normalization Form Canonical Composition)."""
    return unicodedata.normalize('NFC', s)


def validate_json_type(obj: Any, path: str = "") -> None:
    """Validate that object contains only JSON-compatible types.

    Raises CanonicalizationError if non-JSON types are found.

    None is a valid value and is distinct from a missing key.
    """
    if obj is None or isinstance(obj, (bool, str)):
        return
    elif isinstance(obj, int):
        return
    elif isinstance(obj, float):
        raise CanonicalizationError(
            f"Floats are not allowed in attributes (at {path}). Use strings or integers instead."
        )
    elif isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalizationError(
                    f"Dictionary keys must be strings at {path}, got {type(key).__name__}"
                )
            validate_json_type(value, f"{path}.{key}" if path else key)
    elif isinstance(obj, (list, tuple)):
        for i, item in enumerate(obj):
            validate_json_type(item, f"{path}[{i}]" if path else f"[{i}]")
    else:
        raise CanonicalizationError(
            f"Non-JSON type at {path}: {type(obj).__name__}. "
            f"Only None, bool, int, str, dict, and list are allowed."
        )


def _canonicalize_value(obj: Any) -> Any:
    if isinstance(obj, str):
        return _normalize_string(obj)
    elif isinstance(obj, dict):
        return {
            _normalize_string(k): _canonicalize_value(v)
            for k, v in sorted(obj.items())
        }
    elif isinstance(obj, (list, tuple)):
        return [_canonicalize_value(item) for item in obj]
    return obj


def canonicalize_json(obj: Any) -> str:
    """Canonicalize a JSON-serializable object to a stable string representation.

    Raises:
        CanonicalizationError: If object contains floats or non-JSON types
    """
    validate_json_type(obj)
    canonicalized = _canonicalize_value(obj)
    return json.dumps(canonicalized, sort_keys=True, ensure_ascii=False, separators=(',', ':'))


def hash_attributes(attributes: dict | None) -> str:
    """Compute SHA256 hash of canonicalized desired attributes.

    Returns:
        SHA256 hash as hex string (prefixed with "sha256:")
    """
    if attributes is None:
        attributes = {}
    canonical_str = canonicalize_json(attributes)
    digest = hashlib.sha256(canonical_str.encode('utf-8')).hexdigest()
    return f"sha256:{digest}"


def short_digest(value: str, length: int = 8) -> str:
    """Short deterministic hex digest for synthesized identifiers."""
    return hashlib.sha256(value.encode('utf-8')).hexdigest()[:length]
