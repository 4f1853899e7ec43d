"""Pipeline-type policy enforcement.

Runs before execution. A Build pipeline is checked against its configured
ceilings and must contain a recognized build step; an Automation pipeline
goes through the same checks with unbounded ceilings.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from fnmatch import fnmatchcase

from choreo_pipeline.config import EngineSettings, PipelineType
from choreo_pipeline.errors import (
    MissingRequiredStepError,
    ResourceLimitExceededError,
    TimeoutExceededError,
)
from choreo_pipeline.models import BuiltinRef, PipelineDefinition, Resources, Step, TemplateDefinition
from choreo_pipeline.templates import TemplateRegistry
from choreo_pipeline.units import (
    format_cpu,
    format_duration,
    format_memory,
    parse_cpu,
    parse_duration,
    parse_memory,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelinePolicy:
    """Ceilings and required steps for one pipeline type.

    Attributes:
        pipeline_type: Build or Automation.
        max_timeout: Maximum step and aggregate timeout in seconds (None = unbounded).
        max_memory: Maximum memory request/limit in bytes (None = unbounded).
        max_cpu: Maximum CPU request/limit in millicores (None = unbounded).
        required_template_patterns: At least one step's template must match one
            of these glob patterns (empty = no requirement).
    """

    pipeline_type: PipelineType
    max_timeout: float | None = None
    max_memory: int | None = None
    max_cpu: int | None = None
    required_template_patterns: tuple[str, ...] = ()

    @classmethod
    def unbounded(cls, pipeline_type: PipelineType = PipelineType.AUTOMATION) -> PipelinePolicy:
        return cls(pipeline_type=pipeline_type)


def policy_for(pipeline_type: PipelineType | str, settings: EngineSettings | None = None) -> PipelinePolicy:
    """Build the policy for a pipeline type from engine settings."""
    pipeline_type = PipelineType(pipeline_type)
    settings = settings or EngineSettings()

    if pipeline_type == PipelineType.BUILD:
        timeout, memory, cpu = settings.build_max_timeout, settings.build_max_memory, settings.build_max_cpu
        patterns = tuple(settings.build_template_patterns)
    else:
        timeout, memory, cpu = (
            settings.automation_max_timeout,
            settings.automation_max_memory,
            settings.automation_max_cpu,
        )
        patterns = ()

    return PipelinePolicy(
        pipeline_type=pipeline_type,
        max_timeout=parse_duration(timeout) if timeout is not None else None,
        max_memory=parse_memory(memory) if memory is not None else None,
        max_cpu=parse_cpu(cpu) if cpu is not None else None,
        required_template_patterns=patterns,
    )


class PolicyEnforcer:
    """Validates a pipeline against its pipeline-type policy.

    Args:
        policy: The policy to enforce.
        registry: Templates of the pipeline, for resolving step references.
    """

    def __init__(self, policy: PipelinePolicy, registry: TemplateRegistry) -> None:
        self.policy = policy
        self.registry = registry

    def enforce(self, pipeline: PipelineDefinition) -> None:
        """Run every policy check.

        Raises:
            ResourceLimitExceededError: A resource exceeds the ceiling.
            TimeoutExceededError: A step or aggregate timeout exceeds the maximum.
            MissingRequiredStepError: A Build pipeline has no build step.
        """
        self.check_resources(pipeline)
        self.check_timeouts(pipeline)
        self.check_required_steps(pipeline)
        logger.info(f"Policy checks passed for {self.policy.pipeline_type.value} pipeline")

    def check_resources(self, pipeline: PipelineDefinition) -> None:
        for _, step in pipeline.iter_steps():
            for where, resources in self._step_resources(step):
                self._check(resources, step=step.name, where=where)

        for name in self.registry.names():
            template = self.registry.resolve(name)
            if isinstance(template, TemplateDefinition):
                for where, resources in _template_resources(template):
                    self._check(resources, template=name, where=where)

    def check_timeouts(self, pipeline: PipelineDefinition) -> None:
        limit = self.policy.max_timeout
        if limit is None:
            return

        aggregate = 0.0
        for stage in pipeline.stages:
            stage_timeouts = [s.timeout_seconds for s in stage.steps if s.timeout_seconds is not None]
            for step in stage.steps:
                seconds = step.timeout_seconds
                if seconds is not None and seconds > limit:
                    raise TimeoutExceededError(
                        f"Step timeout {format_duration(seconds)} exceeds the "
                        f"{self.policy.pipeline_type.value} maximum of {format_duration(limit)}",
                        step=step.name,
                        timeout=step.timeout,
                    )
            if stage_timeouts:
                aggregate += max(stage_timeouts)

        if aggregate > limit:
            raise TimeoutExceededError(
                f"Aggregate step timeouts {format_duration(aggregate)} exceed the "
                f"{self.policy.pipeline_type.value} maximum of {format_duration(limit)}",
                aggregate=format_duration(aggregate),
            )

    def check_required_steps(self, pipeline: PipelineDefinition) -> None:
        patterns = self.policy.required_template_patterns
        if not patterns:
            return

        for _, step in pipeline.iter_steps():
            if any(fnmatchcase(ref, pattern) for ref in self._template_refs(step) for pattern in patterns):
                return

        raise MissingRequiredStepError(
            f"{self.policy.pipeline_type.value.capitalize()} pipeline requires a step whose template "
            f"matches one of: {', '.join(patterns)}",
        )

    def _template_refs(self, step: Step) -> Iterator[str]:
        """Template names a step refers to, following delegation."""
        if step.template is None:
            return
        yield step.template
        resolved = self.registry.resolve(step.template)
        if isinstance(resolved, BuiltinRef):
            yield resolved.reference
        elif resolved.template is not None:
            yield resolved.template

    def _step_resources(self, step: Step) -> Iterator[tuple[str, Resources]]:
        if step.resources is not None:
            yield "resources", step.resources
        for container in step.container_set or []:
            if container.resources is not None:
                yield f"containerSet.{container.name}.resources", container.resources

    def _check(
        self,
        resources: Resources,
        *,
        step: str | None = None,
        template: str | None = None,
        where: str,
    ) -> None:
        owner = f"step '{step}'" if step else f"template '{template}'"
        for block, quantities in resources.blocks():
            memory = quantities.memory_bytes
            if self.policy.max_memory is not None and memory is not None and memory > self.policy.max_memory:
                raise ResourceLimitExceededError(
                    f"{owner} {where}.{block}.memory {quantities.memory} exceeds the "
                    f"{self.policy.pipeline_type.value} ceiling of {format_memory(self.policy.max_memory)}",
                    step=step,
                    template=template,
                )
            cpu = quantities.cpu_millicores
            if self.policy.max_cpu is not None and cpu is not None and cpu > self.policy.max_cpu:
                raise ResourceLimitExceededError(
                    f"{owner} {where}.{block}.cpu {quantities.cpu} exceeds the "
                    f"{self.policy.pipeline_type.value} ceiling of {format_cpu(self.policy.max_cpu)}",
                    step=step,
                    template=template,
                )


def _template_resources(template: TemplateDefinition) -> Iterator[tuple[str, Resources]]:
    if template.resources is not None:
        yield "resources", template.resources
    if template.script is not None and template.script.resources is not None:
        yield "script.resources", template.script.resources
    for container in template.container_set or []:
        if container.resources is not None:
            yield f"containerSet.{container.name}.resources", container.resources
