"""State document I/O helpers (internal)."""

import json
import os
import tempfile
import uuid
from pathlib import Path
from typing import Union

from pydantic import ValidationError as PydanticValidationError

from plinth._internal.canonical_json import canonical_dumps
from plinth.errors import StateFileError
from plinth.kernel.state import StateDocument


def load_state(path: Union[str, Path]) -> StateDocument:
    """Load the state document; a missing file is an empty document."""
    state_path = Path(path)
    if not state_path.exists():
        return StateDocument(lineage=str(uuid.uuid4()))
    try:
        data = json.loads(state_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise StateFileError(f"State file is not valid JSON: {state_path}: {e}")
    if not isinstance(data, dict) or data.get("format") != "plinth.state":
        raise StateFileError(f"Not a plinth state file: {state_path}")
    try:
        return StateDocument.model_validate(data)
    except PydanticValidationError as e:
        raise StateFileError(f"State file failed validation: {state_path}: {e.error_count()} error(s)")


def save_state(path: Union[str, Path], state: StateDocument) -> StateDocument:
    """Bump the serial and write atomically (temp file + rename)."""
    state_path = Path(path)
    state.serial += 1
    if state.lineage is None:
        state.lineage = str(uuid.uuid4())
    state_path.parent.mkdir(parents=True, exist_ok=True)
    payload = canonical_dumps(state.model_dump(mode="json"), indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{state_path.name}.", dir=str(state_path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp_name, state_path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return state
