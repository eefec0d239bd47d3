"""JSON data file helpers.

Handles conversion between record models and the on-disk list format.
"""

import json
import os
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter

M = TypeVar("M", bound=BaseModel)


def dump_records(records: list[BaseModel]) -> str:
    """Serialize a collection of records as an indented JSON array."""
    data = [record.model_dump(mode="json") for record in records]
    return json.dumps(data, indent=2)


def load_records(model: type[M], text: str) -> list[M]:
    """Parse a JSON array of records.

    A bare JSON object is accepted as a one-element list (older files kept
    a single record per file).
    """
    data: Any = json.loads(text)
    if isinstance(data, dict):
        data = [data]
    return TypeAdapter(list[model]).validate_python(data)  # type: ignore[valid-type]


def atomic_write(path: Path, text: str) -> None:
    """Write a file via temp file and rename so readers never see a partial write."""
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
