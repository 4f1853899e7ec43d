"""JSON Schema validation of configuration documents."""

from __future__ import annotations

import json
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import jsonschema
from jsonschema import Draft202012Validator

from choreo_pipeline.errors import MalformedDocumentError

SCHEMA_RESOURCE = "pipeline.schema.json"


def load_schema(path: str | Path) -> dict[str, Any]:
    """Load a JSON schema file (e.g. an organisation-specific variant)."""
    return json.loads(Path(path).read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def pipeline_schema() -> dict[str, Any]:
    """The bundled pipeline document schema."""
    text = resources.files("choreo_pipeline.schemas").joinpath(SCHEMA_RESOURCE).read_text(encoding="utf-8")
    return json.loads(text)


def validate(instance: Any, schema: dict[str, Any]) -> None:
    """Validate a document against ``schema``, reporting every violation.

    Errors are ordered by document path. The first path is attached to the
    raised error so callers can point at the offending entry.

    Raises:
        MalformedDocumentError: If the document does not match.
    """
    found = sorted(Draft202012Validator(schema).iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path])
    if not found:
        return

    messages = [f"At '{_error_path(e) or '(root)'}': {e.message}" for e in found]
    raise MalformedDocumentError(
        f"Schema validation failed with {len(found)} error(s): {'; '.join(messages)}",
        errors=messages,
        path=_error_path(found[0]) or None,
    )


def validate_document(data: Any) -> None:
    """Validate a configuration document against the bundled schema."""
    validate(data, pipeline_schema())


def _error_path(error: jsonschema.ValidationError) -> str:
    return ".".join(str(p) for p in error.absolute_path)
