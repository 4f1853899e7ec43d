"""Runner contracts.

The engine never executes steps itself. It builds a StepRequest with every
expression already resolved and hands it to a StepRunner, which returns a
StepOutcome once the step terminates.

Runners signal:
- a non-zero ``exit_code``: the step ran and failed
- ``error`` (or raising InfrastructureError): the step could not be run
Cancelling the ``run`` coroutine must stop the step.
"""

from __future__ import annotations

from typing import Literal, Protocol

from pydantic import BaseModel, Field

from choreo_pipeline.models import Container, Resources, VolumeMount

DirectiveKind = Literal["inlineScript", "script", "containerSet", "builtin"]


class StepRequest(BaseModel):
    """A fully resolved step, ready for dispatch.

    Attributes:
        step_name: Name of the step.
        attempt: Attempt number (1-based).
        kind: Which execution directive is being run.
        image: Container image (inline scripts and scripts).
        script: Inline script text or script source.
        command: Interpreter command for ``script`` templates.
        containers: Containers of a containerSet.
        builtin: Built-in template reference (``choreo/<name>@<version>``).
        parameters: Bound template inputs.
        env: Effective environment, after precedence and resolution.
        resources: Effective resource requests/limits.
        volume_mounts: Volume mounts.
        outputs: Output parameter name -> path to read after execution.
        timeout: Step timeout in seconds, if any.
        workflow_uid: Engine-assigned run identifier.
    """

    step_name: str
    attempt: int = 1
    kind: DirectiveKind
    image: str | None = None
    script: str | None = None
    command: list[str] = Field(default_factory=list)
    containers: list[Container] = Field(default_factory=list)
    builtin: str | None = None
    parameters: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict, repr=False)
    resources: Resources | None = None
    volume_mounts: list[VolumeMount] = Field(default_factory=list)
    outputs: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = None
    workflow_uid: str = ""

    def to_payload(self) -> dict:
        """JSON-ready representation with camelCase keys."""
        return {
            "stepName": self.step_name,
            "attempt": self.attempt,
            "kind": self.kind,
            "image": self.image,
            "script": self.script,
            "command": self.command,
            "containers": [c.model_dump(mode="json", by_alias=True, exclude_none=True) for c in self.containers],
            "builtin": self.builtin,
            "parameters": self.parameters,
            "env": self.env,
            "resources": self.resources.model_dump(mode="json", by_alias=True, exclude_none=True)
            if self.resources
            else None,
            "volumeMounts": [m.model_dump(mode="json", by_alias=True, exclude_none=True) for m in self.volume_mounts],
            "outputs": self.outputs,
            "timeout": self.timeout,
            "workflowUid": self.workflow_uid,
        }


class StepOutcome(BaseModel):
    """Result reported by a runner.

    Attributes:
        exit_code: Process exit code (0 = success).
        error: Infrastructure error message, if the step could not run.
        outputs: Output parameter values read from their declared paths.
        logs: Captured step logs.
    """

    exit_code: int = 0
    error: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    logs: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None


class StepRunner(Protocol):
    """Executes one step attempt."""

    async def run(self, request: StepRequest) -> StepOutcome: ...
