"""Typed exceptions for choreo-pipeline.

All engine errors inherit from PipelineError and fall into the taxonomy:
- StructuralError: malformed documents, duplicate names, dangling references
- PolicyError: pipeline-type ceiling violations detected before execution
- ExpressionError: unresolvable or cyclic {{...}} references
- ExecutionError: runner failures, infrastructure faults, timeouts
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, *, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message

    @property
    def kind(self) -> str:
        """Short error kind name for reporting."""
        return type(self).__name__


class SettingsError(PipelineError):
    """Engine settings could not be parsed."""


# Structural errors


class StructuralError(PipelineError):
    """Document structure is invalid. Always fatal, never retried."""

    def __init__(self, message: str, *, path: str | None = None):
        context: dict[str, Any] = {}
        if path:
            context["path"] = path
        super().__init__(message, context=context)
        self.path = path


class MalformedDocumentError(StructuralError):
    """Configuration document failed schema validation."""

    def __init__(self, message: str, *, errors: list[str] | None = None, path: str | None = None):
        super().__init__(message, path=path)
        self.errors = errors or []


class MalformedStepError(StructuralError):
    """Step has zero or multiple execution directives, or invalid fields."""


class MalformedTemplateError(StructuralError):
    """Template definition is invalid."""


class DuplicateStepNameError(StructuralError):
    """Two steps share a name within the same scope."""

    def __init__(self, name: str, *, path: str | None = None):
        super().__init__(f"Duplicate step name '{name}'", path=path)
        self.name = name


class NestedParallelGroupError(StructuralError):
    """A parallel group contains another parallel group."""


class InvalidStepReferenceError(StructuralError):
    """A step references outputs of a step that is not in a prior stage."""

    def __init__(self, step_name: str, referenced: str, *, path: str | None = None):
        super().__init__(
            f"Step '{step_name}' references outputs of '{referenced}', "
            "which does not complete in an earlier stage",
            path=path,
        )
        self.step_name = step_name
        self.referenced = referenced


class ArgumentStepReferenceError(InvalidStepReferenceError):
    """A global argument references step outputs."""

    def __init__(self, argument: str, referenced: str, *, path: str | None = None):
        StructuralError.__init__(
            self,
            f"Global argument '{argument}' references outputs of '{referenced}'; "
            "global arguments are resolved before any step completes",
            path=path,
        )
        self.step_name = None
        self.argument = argument
        self.referenced = referenced


class UnknownVolumeError(StructuralError):
    """A volume mount references an undeclared volume claim template."""


class DuplicateTemplateNameError(StructuralError):
    """A template with the same name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Template '{name}' is already registered", path=f"templates.{name}")
        self.name = name


class TemplateNotFoundError(StructuralError):
    """A referenced template does not exist."""

    def __init__(
        self,
        name: str,
        available: list[str] | None = None,
        *,
        path: str | None = None,
        message: str | None = None,
    ):
        available = available or []
        if message is None:
            available_str = ", ".join(sorted(available)) if available else "(none)"
            message = f"Template '{name}' not found. Available: {available_str}"
        super().__init__(message, path=path)
        self.name = name
        self.available = available


class InvalidBuiltinReferenceError(TemplateNotFoundError):
    """A choreo/ template reference does not follow name@version syntax."""

    def __init__(self, name: str, *, path: str | None = None):
        super().__init__(
            name,
            path=path,
            message=f"Built-in template reference '{name}' must match 'choreo/<name>@<version>'",
        )


class TemplateDelegationDepthExceededError(StructuralError):
    """Template delegation is deeper than one level, or circular."""

    def __init__(self, name: str, chain: list[str]):
        super().__init__(
            f"Template '{name}' delegation exceeds one level: {' -> '.join(chain)}",
            path=f"templates.{name}",
        )
        self.name = name
        self.chain = chain


# Policy errors


class PolicyError(PipelineError):
    """Pipeline violates its pipeline-type policy. Fatal before execution."""

    def __init__(self, message: str, *, step: str | None = None, **context: Any):
        ctx = {"step": step} if step else {}
        ctx.update({k: v for k, v in context.items() if v is not None})
        super().__init__(message, context=ctx)
        self.step = step


class ResourceLimitExceededError(PolicyError):
    """A resource request or limit exceeds the pipeline-type ceiling."""


class TimeoutExceededError(PolicyError):
    """A step or aggregate timeout exceeds the pipeline-type maximum."""


class MissingRequiredStepError(PolicyError):
    """A required step (e.g. a build template) is missing."""


# Expression errors


class ExpressionError(PipelineError):
    """An expression could not be resolved."""


class UnresolvedReferenceError(ExpressionError):
    """A {{...}} token does not resolve to a value."""

    def __init__(self, token: str, reason: str | None = None):
        message = f"Unresolved reference '{{{{{token}}}}}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.token = token


class CyclicReferenceError(ExpressionError):
    """Expression resolution revisits a token already being resolved."""

    def __init__(self, chain: list[str]):
        super().__init__(f"Cyclic reference: {' -> '.join(chain)}")
        self.chain = chain


class InvalidConditionError(ExpressionError):
    """A when condition could not be parsed."""

    def __init__(self, message: str, *, condition: str | None = None):
        super().__init__(message, context={"condition": condition} if condition else None)
        self.condition = condition


# Execution errors


class ExecutionError(PipelineError):
    """Step execution failed."""


class StepFailedError(ExecutionError):
    """The runner reported a non-zero exit."""

    def __init__(self, message: str, *, exit_code: int, attempts: int = 1):
        super().__init__(message, context={"exit_code": exit_code, "attempts": attempts})
        self.exit_code = exit_code
        self.attempts = attempts


class InfrastructureError(ExecutionError):
    """The runner could not execute the step (scheduling, transport, ...)."""


class StepTimeoutError(ExecutionError):
    """A step exceeded its timeout."""

    def __init__(self, message: str, *, timeout_seconds: float | None = None):
        context = {"timeout_seconds": timeout_seconds} if timeout_seconds else {}
        super().__init__(message, context=context)
        self.timeout_seconds = timeout_seconds


class PipelineTimeoutError(ExecutionError):
    """The pipeline exceeded its overall deadline."""

    def __init__(self, message: str, *, timeout_seconds: float | None = None):
        context = {"timeout_seconds": timeout_seconds} if timeout_seconds else {}
        super().__init__(message, context=context)
        self.timeout_seconds = timeout_seconds


class OutputAlreadyRecordedError(PipelineError):
    """Outputs for a step were recorded twice."""

    def __init__(self, step_name: str):
        super().__init__(f"Outputs for step '{step_name}' are already recorded")
        self.step_name = step_name
