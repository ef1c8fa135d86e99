"""Centralized canonical JSON serialization.

Single function for byte-stable JSON used for state file writes,
platform snapshots and CLI output, so serial-to-serial diffs of the
state document only show real changes.
"""

import json
from typing import Any


def canonical_dumps(obj: Any, indent: int | None = None) -> str:
    """
    Canonical JSON serialization.

    Rules:
    - UTF-8 encoding
    - Sorted keys
    - Stable separators (",", ":") when not indented
    - No trailing whitespace

    Args:
        obj: Python object to serialize
        indent: Optional indentation for human-facing files

    Returns:
        Canonical JSON string
    """
    if indent is not None:
        return json.dumps(obj, sort_keys=True, indent=indent, ensure_ascii=False)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False  # UTF-8 encoding
    )
