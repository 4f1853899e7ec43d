"""Configuration document loading and static validation.

Parsing order:
1. JSON Schema validation of the raw document
2. Model construction (arguments, volume claims, templates, stages)
3. Static checks: template references, volume references, cross-stage
   output references, pipeline-wide step name uniqueness

Every failure is a StructuralError raised before anything executes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from choreo_pipeline.errors import (
    ArgumentStepReferenceError,
    DuplicateTemplateNameError,
    InvalidStepReferenceError,
    MalformedDocumentError,
    MalformedTemplateError,
    UnknownVolumeError,
)
from choreo_pipeline.expressions import find_step_references
from choreo_pipeline.graph import build_stages, check_unique_names, format_validation_error
from choreo_pipeline.io import read_document
from choreo_pipeline.models import (
    Arguments,
    ContainerTemplateDefinition,
    PipelineDefinition,
    Step,
    TemplateDefinition,
    VolumeClaimTemplate,
    VolumeMount,
)
from choreo_pipeline.schema import validate_document
from choreo_pipeline.templates import TemplateRegistry

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def load_pipeline(source: str | Path) -> PipelineDefinition:
    """Load and validate a pipeline from a YAML file path or inline YAML.

    Raises:
        StructuralError: If the document is invalid.
    """
    data = read_document(source)
    pipeline = parse_pipeline(data)
    logger.info(f"Loaded pipeline with {len(pipeline.stages)} stage(s) from {_describe(source)}")
    return pipeline


def parse_pipeline(data: Any) -> PipelineDefinition:
    """Build a validated PipelineDefinition from a parsed document.

    Raises:
        MalformedDocumentError: Schema violations.
        MalformedStepError / MalformedTemplateError: Invalid definitions.
        DuplicateStepNameError / DuplicateTemplateNameError: Name collisions.
        NestedParallelGroupError: Parallel groups nested in parallel groups.
        TemplateNotFoundError: Dangling template references.
        UnknownVolumeError: Mounts of undeclared volumes.
        InvalidStepReferenceError: References to outputs of non-prior steps.
    """
    validate_document(data)

    arguments = _validate_model(Arguments, data.get("arguments"), path="arguments", error=MalformedDocumentError)
    volumes = tuple(
        _validate_model(VolumeClaimTemplate, raw, path=f"volumeClaimTemplates[{i}]", error=MalformedDocumentError)
        for i, raw in enumerate(data.get("volumeClaimTemplates") or [])
    )
    templates = _parse_templates(data.get("templates"), TemplateDefinition, "templates")
    container_templates = _parse_templates(
        data.get("containerTemplates"), ContainerTemplateDefinition, "containerTemplates"
    )
    stages = build_stages(data.get("steps"))

    pipeline = PipelineDefinition(
        stages=tuple(stages),
        arguments=arguments,
        volume_claim_templates=volumes,
        templates=templates,
        container_templates=container_templates,
    )
    validate_pipeline(pipeline)
    return pipeline


def build_registry(pipeline: PipelineDefinition) -> TemplateRegistry:
    """Template registry holding a pipeline's templates and container templates."""
    return TemplateRegistry.from_definitions(
        pipeline.templates.values(),
        pipeline.container_templates.values(),
    )


def validate_pipeline(pipeline: PipelineDefinition, registry: TemplateRegistry | None = None) -> TemplateRegistry:
    """Run the static checks on an in-memory pipeline.

    Returns:
        The validated template registry.
    """
    registry = registry or build_registry(pipeline)
    registry.validate()

    steps = [step for _, step in pipeline.iter_steps()]
    check_unique_names(steps, path="steps")

    for _, step in pipeline.iter_steps():
        if step.template is not None:
            registry.resolve(step.template, path=f"steps.{step.name}.template")

    _check_volumes(pipeline, registry)
    _check_step_references(pipeline, registry)
    return registry


def _check_volumes(pipeline: PipelineDefinition, registry: TemplateRegistry) -> None:
    declared = {v.name for v in pipeline.volume_claim_templates}

    def check(mounts: list[VolumeMount], path: str) -> None:
        for mount in mounts:
            if mount.name not in declared:
                raise UnknownVolumeError(
                    f"Volume '{mount.name}' is not declared in volumeClaimTemplates",
                    path=path,
                )

    for _, step in pipeline.iter_steps():
        check(step.volume_mounts, f"steps.{step.name}.volumeMounts")
        for container in step.container_set or []:
            check(container.volume_mounts, f"steps.{step.name}.containerSet.{container.name}.volumeMounts")

    for name in registry.names():
        template = registry.get(name)
        check(template.volume_mounts, f"templates.{name}.volumeMounts")
        if template.script is not None:
            check(template.script.volume_mounts, f"templates.{name}.script.volumeMounts")
        for container in template.container_set or []:
            check(container.volume_mounts, f"templates.{name}.containerSet.{container.name}.volumeMounts")


def _check_step_references(pipeline: PipelineDefinition, registry: TemplateRegistry) -> None:
    """Steps may only read outputs of steps in strictly earlier stages.

    Global arguments are visible to every step, including the first, so they
    may not reference step outputs at all.
    """
    for name, value in pipeline.global_arguments().items():
        referenced = sorted(find_step_references(value))
        if referenced:
            raise ArgumentStepReferenceError(name, referenced[0], path=f"arguments.{name}")

    for stage_index, step in pipeline.iter_steps():
        for text in _expression_texts(step, registry):
            for referenced in sorted(find_step_references(text)):
                referenced_index = pipeline.stage_index(referenced)
                if referenced_index is None or referenced_index >= stage_index:
                    raise InvalidStepReferenceError(step.name, referenced, path=f"steps.{step.name}")


def _expression_texts(step: Step, registry: TemplateRegistry) -> Iterator[str]:
    """Every string of a step (and its template) that may hold expressions."""
    if step.when is not None:
        yield step.when
    if step.inline_script is not None:
        yield step.inline_script
    for env in step.env:
        yield env.value
    for param in step.arguments.parameters:
        if param.value is not None:
            yield param.value
    for container in step.container_set or []:
        yield from container.command
        yield from container.args
        for env in container.env:
            yield env.value

    if step.template is None:
        return
    template = registry.resolve(step.template)
    if not isinstance(template, TemplateDefinition):
        return
    if template.inline_script is not None:
        yield template.inline_script
    if template.script is not None:
        yield template.script.source
        yield from template.script.command
        for env in template.script.env:
            yield env.value
    for env in template.env:
        yield env.value
    for param in template.inputs.parameters:
        if param.value is not None:
            yield param.value
    for container in template.container_set or []:
        yield from container.command
        yield from container.args
        for env in container.env:
            yield env.value
    for param in template.outputs.parameters:
        yield param.value_from.path


def _parse_templates(raw: Any, model: type[ModelT], section: str) -> dict[str, ModelT]:
    """Parse a template section given as a name -> definition mapping or a list."""
    if raw is None:
        return {}

    if isinstance(raw, dict):
        entries = []
        for name, body in raw.items():
            body = dict(body or {})
            if body.setdefault("name", name) != name:
                raise MalformedTemplateError(
                    f"Template key '{name}' does not match its name '{body['name']}'",
                    path=f"{section}.{name}",
                )
            entries.append((f"{section}.{name}", body))
    else:
        entries = [(f"{section}[{i}]", body) for i, body in enumerate(raw)]

    parsed: dict[str, ModelT] = {}
    for path, body in entries:
        template = _validate_model(model, body, path=path, error=MalformedTemplateError)
        if template.name in parsed:
            raise DuplicateTemplateNameError(template.name)
        parsed[template.name] = template
    return parsed


def _validate_model(model: type[ModelT], raw: Any, *, path: str, error: type[Exception]) -> ModelT:
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise error(format_validation_error(e), path=path) from e


def _describe(source: str | Path) -> str:
    text = str(source)
    return "inline document" if "\n" in text else text
