"""Reading pipeline documents and writing execution results."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from choreo_pipeline.errors import MalformedDocumentError


def _is_file(source: str | Path) -> bool:
    if isinstance(source, Path):
        return source.is_file()
    # Multi-line strings are always inline documents.
    return "\n" not in source and os.path.isfile(source)


def read_document(source: str | Path) -> Any:
    """Read a pipeline document from a file or an inline YAML/JSON string.

    JSON is accepted as well, since it is a subset of YAML.

    Raises:
        MalformedDocumentError: If the text cannot be parsed.
    """
    try:
        if _is_file(source):
            text = Path(source).read_text(encoding="utf-8")
        else:
            text = str(source)
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedDocumentError(f"Invalid YAML: {e}") from e


def write_output(dest: str | Path, obj: Any) -> None:
    """Write a JSON result file, replacing any previous one atomically.

    Parent directories are created. Values that JSON cannot encode are
    written using ``str()``.
    """
    dest_path = Path(dest)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest_path.name}.", dir=dest_path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, indent=2, default=str)
            f.write("\n")
        os.replace(tmp_name, dest_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
