"""Step graph builder.

Turns the raw ``steps`` list of a configuration document into an ordered
sequence of stages:

    steps:
      - name: build              # StepStage
        template: choreo/docker-build@v1
      - - name: unit-tests       # ParallelGroup (YAML double-dash)
          inlineScript: make test
        - name: lint
          inlineScript: make lint
      - name: publish            # StepStage, starts after both above complete
        inlineScript: ./publish.sh

Only one level of parallelism is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from choreo_pipeline.errors import (
    DuplicateStepNameError,
    MalformedDocumentError,
    MalformedStepError,
    NestedParallelGroupError,
)
from choreo_pipeline.models import (
    STEP_DIRECTIVE_FIELDS,
    ParallelGroup,
    Stage,
    Step,
    StepStage,
    directive_fields,
)

logger = logging.getLogger(__name__)


def build_stages(raw_steps: Any, *, path: str = "steps") -> list[Stage]:
    """Parse the raw ``steps`` list into stages.

    Args:
        raw_steps: The ``steps`` value from the configuration document.
        path: Document path used in error messages.

    Returns:
        Stages in execution order.

    Raises:
        MalformedDocumentError: If ``steps`` is missing, not a list, or empty.
        MalformedStepError: If a step is not a mapping, has zero or several
            execution directives, or has invalid fields.
        NestedParallelGroupError: If a parallel group contains a list.
        DuplicateStepNameError: If names repeat within the top level or a group.
    """
    if not isinstance(raw_steps, list):
        raise MalformedDocumentError("'steps' must be a list", path=path)
    if not raw_steps:
        raise MalformedDocumentError("'steps' must not be empty", path=path)

    stages: list[Stage] = []
    top_level: list[Step] = []

    for index, entry in enumerate(raw_steps):
        entry_path = f"{path}[{index}]"
        if isinstance(entry, list):
            group = _build_group(entry, path=entry_path)
            stages.append(group)
        else:
            step = parse_step(entry, path=entry_path)
            top_level.append(step)
            stages.append(StepStage(step))

    check_unique_names(top_level, path=path)
    logger.debug(f"Built {len(stages)} stage(s) from {path}")
    return stages


def _build_group(entries: list[Any], *, path: str) -> ParallelGroup:
    if not entries:
        raise MalformedStepError("Parallel group must not be empty", path=path)

    steps: list[Step] = []
    for index, entry in enumerate(entries):
        entry_path = f"{path}[{index}]"
        if isinstance(entry, list):
            raise NestedParallelGroupError(
                "Parallel groups cannot be nested (single level of parallel execution)",
                path=entry_path,
            )
        steps.append(parse_step(entry, path=entry_path))

    check_unique_names(steps, path=path)
    return ParallelGroup(tuple(steps))


def parse_step(raw: Any, *, path: str) -> Step:
    """Validate and build a single step.

    Raises:
        MalformedStepError: If the entry is not a valid step.
    """
    if not isinstance(raw, dict):
        raise MalformedStepError(f"Step must be a mapping, got {type(raw).__name__}", path=path)

    present = directive_fields(raw, STEP_DIRECTIVE_FIELDS)
    if len(present) != 1:
        name = raw.get("name", "<unnamed>")
        found = ", ".join(present) if present else "none"
        raise MalformedStepError(
            f"Step '{name}' requires exactly one of template, inlineScript or containerSet "
            f"(found: {found})",
            path=path,
        )

    try:
        return Step.model_validate(raw)
    except ValidationError as e:
        raise MalformedStepError(format_validation_error(e), path=path) from e


def check_unique_names(steps: Sequence[Step], *, path: str) -> None:
    """Raise DuplicateStepNameError if two steps in one scope share a name."""
    seen: set[str] = set()
    for step in steps:
        if step.name in seen:
            raise DuplicateStepNameError(step.name, path=path)
        seen.add(step.name)


def format_validation_error(error: ValidationError) -> str:
    """Format pydantic errors as 'At <loc>: <msg>' entries."""
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "(root)"
        parts.append(f"At '{loc}': {item['msg']}")
    return "; ".join(parts)
