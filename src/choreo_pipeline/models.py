"""Pipeline definition models.

This module defines the in-memory form of a configuration document:
- PipelineDefinition: arguments, volume claims, stages, templates
- Step / TemplateDefinition / ContainerTemplateDefinition
- EnvVar, Resources, RetryStrategy, ContinueOn, Parameters
- Execution directives (InlineScript | TemplateRef | ContainerSet | Script | BuiltinRef)
- Stages (StepStage | ParallelGroup)

Field names are snake_case in Python and camelCase in YAML
(``inlineScript``, ``retryStrategy``, ``continueOn``, ...).
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from choreo_pipeline.units import parse_cpu, parse_duration, parse_memory

NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
BUILTIN_NAMESPACE = "choreo"
BUILTIN_PATTERN = re.compile(r"^choreo/([a-z0-9][a-z0-9-]*)@(v[0-9]+(?:\.[0-9]+)*)$")

STEP_DIRECTIVE_FIELDS = ("template", "inlineScript", "containerSet")
TEMPLATE_DIRECTIVE_FIELDS = ("inlineScript", "script", "containerSet", "template")


def is_builtin_reference(ref: str) -> bool:
    """True if the reference lives in the choreo/ built-in namespace."""
    return ref.startswith(f"{BUILTIN_NAMESPACE}/")


def _check_name(value: str) -> str:
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"name '{value}' must start with a letter and contain only "
            "letters, digits, '-' or '_'"
        )
    return value


def _as_string(value: Any) -> Any:
    """Coerce YAML scalars (ints, floats, booleans) to their string form."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


class CamelModel(BaseModel):
    """Base model with camelCase aliases and strict keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class EnvVar(CamelModel):
    """Environment variable declaration.

    The value may be a literal or contain {{...}} references.
    """

    name: str
    value: str = ""

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        if not ENV_NAME_PATTERN.match(v):
            raise ValueError(f"environment variable name '{v}' must match {ENV_NAME_PATTERN.pattern}")
        return v

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> Any:
        return "" if v is None else _as_string(v)


class ResourceQuantities(CamelModel):
    """Memory and CPU quantities (a requests or limits block)."""

    memory: str | None = None
    cpu: str | None = None

    @field_validator("memory", mode="before")
    @classmethod
    def check_memory(cls, v: Any) -> Any:
        if v is None:
            return v
        v = _as_string(v)
        parse_memory(v)
        return v

    @field_validator("cpu", mode="before")
    @classmethod
    def check_cpu(cls, v: Any) -> Any:
        if v is None:
            return v
        v = _as_string(v)
        parse_cpu(v)
        return v

    @property
    def memory_bytes(self) -> int | None:
        return parse_memory(self.memory) if self.memory is not None else None

    @property
    def cpu_millicores(self) -> int | None:
        return parse_cpu(self.cpu) if self.cpu is not None else None


class Resources(CamelModel):
    """Resource requests and limits."""

    requests: ResourceQuantities | None = None
    limits: ResourceQuantities | None = None

    def blocks(self) -> Iterator[tuple[str, ResourceQuantities]]:
        """Yield ("requests"|"limits", quantities) for each present block."""
        if self.requests is not None:
            yield "requests", self.requests
        if self.limits is not None:
            yield "limits", self.limits


class VolumeMount(CamelModel):
    """Mount of a named volume into a step or container."""

    name: str
    mount_path: str
    read_only: bool = False
    sub_path: str | None = None


class VolumeClaimTemplate(CamelModel):
    """Named persistent volume claim.

    Accepts either ``name`` or the Kubernetes-style ``metadata.name``.
    """

    name: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    spec: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def lift_metadata_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and "name" not in data:
            metadata = data.get("metadata")
            if isinstance(metadata, dict) and "name" in metadata:
                return {**data, "name": metadata["name"]}
        return data


class RetryPolicy(str, Enum):
    """Which failure classes are retried."""

    ALWAYS = "Always"
    ON_FAILURE = "OnFailure"
    ON_ERROR = "OnError"


class Backoff(CamelModel):
    """Retry backoff: duration * factor^(attempt-1), capped at maxDuration."""

    duration: str | None = None
    factor: float = 1.0
    max_duration: str | None = None

    @field_validator("duration", "max_duration", mode="before")
    @classmethod
    def check_duration(cls, v: Any) -> Any:
        if v is None:
            return v
        v = _as_string(v)
        parse_duration(v)
        return v

    @field_validator("factor")
    @classmethod
    def check_factor(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("backoff factor must be positive")
        return v

    def delay_for(self, retry: int) -> float:
        """Delay in seconds before the given retry (1-based)."""
        if self.duration is None:
            return 0.0
        delay = parse_duration(self.duration) * (self.factor ** (retry - 1))
        if self.max_duration is not None:
            delay = min(delay, parse_duration(self.max_duration))
        return delay


class RetryStrategy(CamelModel):
    """Retry policy for a step."""

    limit: int = Field(default=0, ge=0)
    retry_policy: RetryPolicy = RetryPolicy.ON_FAILURE
    backoff: Backoff | None = None

    def delay_for(self, retry: int) -> float:
        return self.backoff.delay_for(retry) if self.backoff else 0.0


class ContinueOn(CamelModel):
    """Failure tolerance for a step."""

    error: bool = False
    failed: bool = False


class ValueFrom(CamelModel):
    """Where an output parameter's value is read from after execution."""

    path: str | None = None
    default: str | None = None


class Parameter(CamelModel):
    """Named parameter (argument, input or output)."""

    name: str
    value: str | None = None
    value_from: ValueFrom | None = None
    description: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> Any:
        return _as_string(v)


def _parameters_before(data: Any) -> Any:
    if data is None:
        return {"parameters": []}
    if isinstance(data, list):
        return {"parameters": data}
    return data


class Arguments(CamelModel):
    """Argument parameters, Argo style or a bare list of name/value pairs."""

    parameters: list[Parameter] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_list(cls, data: Any) -> Any:
        return _parameters_before(data)

    def as_dict(self) -> dict[str, str | None]:
        return {p.name: p.value for p in self.parameters}


class Inputs(CamelModel):
    """Template inputs. A parameter's ``value`` is its default."""

    parameters: list[Parameter] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_list(cls, data: Any) -> Any:
        return _parameters_before(data)


class Outputs(CamelModel):
    """Template outputs; every parameter must declare ``valueFrom.path``."""

    parameters: list[Parameter] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_list(cls, data: Any) -> Any:
        return _parameters_before(data)

    @model_validator(mode="after")
    def check_paths(self) -> Outputs:
        for param in self.parameters:
            if param.value_from is None or not param.value_from.path:
                raise ValueError(f"output parameter '{param.name}' requires valueFrom.path")
        return self

    def paths(self) -> dict[str, str]:
        return {p.name: p.value_from.path for p in self.parameters if p.value_from and p.value_from.path}


class Container(CamelModel):
    """A container inside a containerSet."""

    name: str
    image: str | None = None
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    env: list[EnvVar] = Field(default_factory=list)
    resources: Resources | None = None
    volume_mounts: list[VolumeMount] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _check_name(v)

    @field_validator("command", "args", mode="before")
    @classmethod
    def coerce_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        if isinstance(v, list):
            return [_as_string(item) for item in v]
        return v


def _container_set_before(v: Any) -> Any:
    if isinstance(v, dict) and "containers" in v:
        return v["containers"]
    return v


class ScriptSource(CamelModel):
    """Argo-style ``script`` block."""

    source: str
    image: str | None = None
    command: list[str] = Field(default_factory=list)
    env: list[EnvVar] = Field(default_factory=list)
    resources: Resources | None = None
    volume_mounts: list[VolumeMount] = Field(default_factory=list)


# Execution directives


@dataclass(frozen=True)
class InlineScript:
    text: str


@dataclass(frozen=True)
class TemplateRef:
    name: str


@dataclass(frozen=True)
class ContainerSet:
    containers: tuple[Container, ...]


@dataclass(frozen=True)
class Script:
    script: ScriptSource


@dataclass(frozen=True)
class BuiltinRef:
    """Opaque built-in template, forwarded as-is to the runner."""

    namespace: str
    name: str
    version: str

    @property
    def reference(self) -> str:
        return f"{self.namespace}/{self.name}@{self.version}"

    @classmethod
    def parse(cls, ref: str) -> BuiltinRef | None:
        """Parse ``choreo/<name>@<version>``; None if the syntax is wrong."""
        match = BUILTIN_PATTERN.match(ref)
        if not match:
            return None
        return cls(namespace=BUILTIN_NAMESPACE, name=match.group(1), version=match.group(2))


ExecutionDirective = InlineScript | TemplateRef | ContainerSet | Script | BuiltinRef


def _reference_directive(ref: str) -> TemplateRef | BuiltinRef:
    if is_builtin_reference(ref):
        builtin = BuiltinRef.parse(ref)
        if builtin is not None:
            return builtin
    return TemplateRef(ref)


class TemplateDefinition(CamelModel):
    """Reusable, named execution directive.

    Exactly one of ``inlineScript``, ``script``, ``containerSet`` or
    ``template`` (one-level delegation) must be set.
    """

    name: str
    inline_script: str | None = None
    script: ScriptSource | None = None
    container_set: list[Container] | None = None
    template: str | None = None
    image: str | None = None
    env: list[EnvVar] = Field(default_factory=list)
    volume_mounts: list[VolumeMount] = Field(default_factory=list)
    resources: Resources | None = None
    inputs: Inputs = Field(default_factory=Inputs)
    outputs: Outputs = Field(default_factory=Outputs)

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _check_name(v)

    @field_validator("container_set", mode="before")
    @classmethod
    def accept_containers_key(cls, v: Any) -> Any:
        return _container_set_before(v)

    @model_validator(mode="after")
    def check_directive(self) -> TemplateDefinition:
        present = [
            key
            for key, value in (
                ("inlineScript", self.inline_script),
                ("script", self.script),
                ("containerSet", self.container_set),
                ("template", self.template),
            )
            if value is not None
        ]
        if len(present) != 1:
            raise ValueError(
                "template requires exactly one of inlineScript, script, containerSet or "
                f"template (found: {', '.join(present) or 'none'})"
            )
        return self

    @property
    def delegate(self) -> str | None:
        """Name of the local template this one delegates to, if any."""
        if self.template is not None and not is_builtin_reference(self.template):
            return self.template
        return None

    @property
    def directive(self) -> ExecutionDirective:
        if self.inline_script is not None:
            return InlineScript(self.inline_script)
        if self.script is not None:
            return Script(self.script)
        if self.container_set is not None:
            return ContainerSet(tuple(self.container_set))
        return _reference_directive(self.template or "")

    def input_defaults(self) -> dict[str, str]:
        return {p.name: p.value for p in self.inputs.parameters if p.value is not None}


class ContainerTemplateDefinition(CamelModel):
    """Reusable single-container template."""

    name: str
    image: str
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    env: list[EnvVar] = Field(default_factory=list)
    resources: Resources | None = None
    volume_mounts: list[VolumeMount] = Field(default_factory=list)
    inputs: Inputs = Field(default_factory=Inputs)
    outputs: Outputs = Field(default_factory=Outputs)

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _check_name(v)

    def as_template(self) -> TemplateDefinition:
        """View as a TemplateDefinition with a one-container containerSet."""
        container = Container(
            name=self.name,
            image=self.image,
            command=self.command,
            args=self.args,
            env=[],
            resources=None,
            volume_mounts=[],
        )
        return TemplateDefinition(
            name=self.name,
            container_set=[container],
            image=self.image,
            env=self.env,
            volume_mounts=self.volume_mounts,
            resources=self.resources,
            inputs=self.inputs,
            outputs=self.outputs,
        )


class Step(CamelModel):
    """Single named unit of work.

    Exactly one of ``template``, ``inlineScript`` or ``containerSet``.
    """

    name: str
    template: str | None = None
    inline_script: str | None = None
    container_set: list[Container] | None = None
    image: str | None = None
    env: list[EnvVar] = Field(default_factory=list)
    volume_mounts: list[VolumeMount] = Field(default_factory=list)
    resources: Resources | None = None
    retry_strategy: RetryStrategy | None = None
    timeout: str | None = None
    when: str | None = None
    arguments: Arguments = Field(default_factory=Arguments)
    continue_on: ContinueOn | None = None

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _check_name(v)

    @field_validator("container_set", mode="before")
    @classmethod
    def accept_containers_key(cls, v: Any) -> Any:
        return _container_set_before(v)

    @field_validator("timeout", mode="before")
    @classmethod
    def check_timeout(cls, v: Any) -> Any:
        if v is None:
            return v
        v = _as_string(v)
        parse_duration(v)
        return v

    @field_validator("when", mode="before")
    @classmethod
    def coerce_when(cls, v: Any) -> Any:
        return _as_string(v)

    @model_validator(mode="after")
    def check_directive(self) -> Step:
        present = directive_fields(
            {
                "template": self.template,
                "inlineScript": self.inline_script,
                "containerSet": self.container_set,
            },
            STEP_DIRECTIVE_FIELDS,
        )
        if len(present) != 1:
            raise ValueError(
                "step requires exactly one of template, inlineScript or containerSet "
                f"(found: {', '.join(present) or 'none'})"
            )
        return self

    @property
    def directive(self) -> ExecutionDirective:
        if self.inline_script is not None:
            return InlineScript(self.inline_script)
        if self.container_set is not None:
            return ContainerSet(tuple(self.container_set))
        return _reference_directive(self.template or "")

    @property
    def timeout_seconds(self) -> float | None:
        return parse_duration(self.timeout) if self.timeout is not None else None


def directive_fields(raw: dict[str, Any], fields: tuple[str, ...]) -> list[str]:
    """Names of the directive fields present (non-null) in a raw mapping."""
    return [key for key in fields if raw.get(key) is not None]


# Stages


@dataclass(frozen=True)
class StepStage:
    """Stage holding a single step."""

    step: Step

    @property
    def steps(self) -> tuple[Step, ...]:
        return (self.step,)

    @property
    def parallel(self) -> bool:
        return False


@dataclass(frozen=True)
class ParallelGroup:
    """Stage whose steps run concurrently (fan-out / fan-in)."""

    steps: tuple[Step, ...]

    @property
    def parallel(self) -> bool:
        return True


Stage = StepStage | ParallelGroup


@dataclass(frozen=True)
class PipelineDefinition:
    """Parsed configuration document.

    Attributes:
        stages: Ordered stages built from ``steps``.
        arguments: Global arguments (ordered).
        volume_claim_templates: Named persistent volume claims.
        templates: Template definitions by name.
        container_templates: Container template definitions by name.
    """

    stages: tuple[Stage, ...]
    arguments: Arguments = field(default_factory=Arguments)
    volume_claim_templates: tuple[VolumeClaimTemplate, ...] = ()
    templates: dict[str, TemplateDefinition] = field(default_factory=dict)
    container_templates: dict[str, ContainerTemplateDefinition] = field(default_factory=dict)

    def iter_steps(self) -> Iterator[tuple[int, Step]]:
        """Yield (stage_index, step) for every step in stage order."""
        for index, stage in enumerate(self.stages):
            for step in stage.steps:
                yield index, step

    def get_step(self, name: str) -> Step | None:
        for _, step in self.iter_steps():
            if step.name == name:
                return step
        return None

    def stage_index(self, name: str) -> int | None:
        for index, step in self.iter_steps():
            if step.name == name:
                return index
        return None

    @property
    def step_names(self) -> list[str]:
        return [step.name for _, step in self.iter_steps()]

    def global_arguments(self) -> dict[str, str]:
        return {name: value for name, value in self.arguments.as_dict().items() if value is not None}
