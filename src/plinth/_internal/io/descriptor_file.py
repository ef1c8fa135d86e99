"""Descriptor file loading.

The kernel only sees parsed dicts; reading from disk happens here.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

from plinth.errors import ValidationError
from plinth.kernel.descriptor import parse_descriptor
from plinth.kernel.graph import ResourceGraph


def read_descriptor_file(path: Path) -> Dict[str, Any]:
    """Load a descriptor JSON file into a dict."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        raise ValidationError(f"Descriptor not found: {path}")
    except json.JSONDecodeError as e:
        raise ValidationError(f"Descriptor is not valid JSON: {path}: {e}")


def load_descriptor(
    source: Union[str, Path, Dict[str, Any]],
    variables: Optional[Dict[str, Any]] = None,
) -> ResourceGraph:
    """Load a descriptor (path or dict) into a validated ResourceGraph.

    No remote calls, no file writes.

    Raises:
        ValidationError: missing attributes, undefined references, cycles,
            undefined variables or malformed documents.
    """
    data = source if isinstance(source, dict) else read_descriptor_file(Path(source))
    descriptor, values = parse_descriptor(data, variables)
    return ResourceGraph.from_descriptor(descriptor, values)
