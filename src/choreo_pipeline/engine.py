"""Pipeline execution engine.

Walks the stages of a PipelineDefinition, dispatching each step to a
StepRunner. Per-step state machine:

    Pending -> Skipped                       (when evaluates false)
    Pending -> Eligible -> Running -> Succeeded
                                   -> Failed -> Tolerated   (continueOn)
                                             -> abort       (otherwise)
    Running -> Cancelled                     (sibling failure, deadline, cancel())

Stages run in order. A ParallelGroup fans out its steps as asyncio tasks
and fans in once all of them terminate; the first untolerated failure
cancels the siblings that are still running and no later stage starts.

Failure classes:
- Failure: non-zero exit, step timeout
- Error: runner/infrastructure fault, expression error
``retryPolicy`` and ``continueOn`` are evaluated against these classes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from choreo_pipeline.conditions import evaluate_condition
from choreo_pipeline.config import EngineSettings, PipelineType
from choreo_pipeline.errors import (
    ExecutionError,
    ExpressionError,
    InfrastructureError,
    PipelineError,
    PipelineTimeoutError,
    StepFailedError,
    StepTimeoutError,
    UnresolvedReferenceError,
)
from choreo_pipeline.expressions import ExpressionResolver, ResolutionContext, ScopeAccessor
from choreo_pipeline.loader import validate_pipeline
from choreo_pipeline.models import (
    ENV_NAME_PATTERN,
    BuiltinRef,
    Container,
    ContainerSet,
    EnvVar,
    InlineScript,
    ParallelGroup,
    PipelineDefinition,
    RetryPolicy,
    Script,
    Step,
    TemplateDefinition,
    TemplateRef,
)
from choreo_pipeline.outputs import OutputStore
from choreo_pipeline.policy import PipelinePolicy, PolicyEnforcer, policy_for
from choreo_pipeline.runners.base import StepOutcome, StepRequest, StepRunner
from choreo_pipeline.templates import TemplateRegistry
from choreo_pipeline.units import format_duration

logger = logging.getLogger(__name__)


class StepState(str, Enum):
    """Lifecycle state of a step."""

    PENDING = "Pending"
    SKIPPED = "Skipped"
    ELIGIBLE = "Eligible"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TOLERATED = "Tolerated"
    CANCELLED = "Cancelled"


TERMINAL_STATES = frozenset(
    {StepState.SKIPPED, StepState.SUCCEEDED, StepState.FAILED, StepState.TOLERATED, StepState.CANCELLED}
)


class FailureClass(str, Enum):
    """Which kind of failure ended an attempt."""

    FAILURE = "Failure"
    ERROR = "Error"


class PipelineOutcome(str, Enum):
    """Overall result of a pipeline run."""

    SUCCEEDED = "Succeeded"
    SUCCEEDED_WITH_TOLERANCES = "SucceededWithTolerances"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass
class StepRecord:
    """Runtime record of one step.

    Attributes:
        name: Step name.
        stage: Index of the stage holding the step.
        state: Current state.
        attempts: Number of attempts dispatched.
        failure_class: Class of the final failure, if any.
        error_kind: Exception type name of the final failure, if any.
        error: Message of the final failure, if any.
        exit_code: Exit code of the last attempt, if it ran.
        outputs: Recorded outputs (Succeeded or Tolerated only).
        started_at: When the first attempt started.
        finished_at: When the step reached a terminal state.
    """

    name: str
    stage: int
    state: StepState = StepState.PENDING
    attempts: int = 0
    failure_class: FailureClass | None = None
    error_kind: str | None = None
    error: str | None = None
    exit_code: int | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "stage": self.stage,
            "state": self.state.value,
            "attempts": self.attempts,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "error_kind": self.error_kind,
            "error": self.error,
            "exit_code": self.exit_code,
            "outputs": self.outputs,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class PipelineResult:
    """Result of a pipeline run.

    Attributes:
        outcome: Overall outcome.
        workflow_uid: Engine-assigned run identifier.
        steps: Step records in stage order.
        failed_step: Name of the step that aborted the pipeline, if any.
        error_kind: Exception type name of the aborting error, if any.
        error: Message of the aborting error, if any.
        started_at: Run start time.
        finished_at: Run end time.
    """

    outcome: PipelineOutcome
    workflow_uid: str
    steps: dict[str, StepRecord]
    failed_step: str | None = None
    error_kind: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """True for Succeeded and SucceededWithTolerances."""
        return self.outcome in (PipelineOutcome.SUCCEEDED, PipelineOutcome.SUCCEEDED_WITH_TOLERANCES)

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def state_of(self, step_name: str) -> StepState:
        return self.steps[step_name].state

    def steps_in_state(self, state: StepState) -> list[str]:
        return [name for name, record in self.steps.items() if record.state == state]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "outcome": self.outcome.value,
            "workflow_uid": self.workflow_uid,
            "failed_step": self.failed_step,
            "error_kind": self.error_kind,
            "error": self.error,
            "duration_seconds": self.duration_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": {name: record.to_dict() for name, record in self.steps.items()},
        }


class _AttemptFailed(Exception):
    """Internal: one attempt ended in failure."""

    def __init__(
        self,
        failure_class: FailureClass,
        error: PipelineError,
        *,
        outcome: StepOutcome | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(str(error))
        self.failure_class = failure_class
        self.error = error
        self.outcome = outcome
        self.retryable = retryable


@dataclass
class _PreparedStep:
    """A step with its template resolved and expressions substituted."""

    request: StepRequest
    declared_outputs: dict[str, str]
    output_defaults: dict[str, str]


SleepFn = Callable[[float], Awaitable[Any]]


class PipelineEngine:
    """Executes a pipeline against a StepRunner.

    Args:
        pipeline: The pipeline to execute.
        runner: Execution backend for individual steps.
        pipeline_type: Build or Automation; selects the policy.
        settings: Engine settings (ceilings, default image).
        policy: Explicit policy, overriding the one derived from settings.
        registry: Template registry (built from the pipeline when omitted).
        variables: Accessor for VARIABLES.* references.
        secrets: Accessor for SECRETS.* references.
        system_env: Process-boundary env, the lowest precedence level.
        workflow_name: Exposed as ``{{workflow.name}}``.
        workflow_uid: Exposed as ``{{workflow.uid}}`` (generated when omitted).
        sleep: Coroutine used for retry backoff (injectable for tests).

    Raises:
        StructuralError: If the pipeline fails static validation.
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        runner: StepRunner,
        *,
        pipeline_type: PipelineType | str = PipelineType.AUTOMATION,
        settings: EngineSettings | None = None,
        policy: PipelinePolicy | None = None,
        registry: TemplateRegistry | None = None,
        variables: ScopeAccessor | None = None,
        secrets: ScopeAccessor | None = None,
        system_env: Mapping[str, str] | None = None,
        workflow_name: str = "pipeline",
        workflow_uid: str | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.pipeline = pipeline
        self.runner = runner
        self.pipeline_type = PipelineType(pipeline_type)
        self.settings = settings or EngineSettings()
        self.policy = policy or policy_for(self.pipeline_type, self.settings)
        self.registry = validate_pipeline(pipeline, registry)
        self.variables = variables
        self.secrets = secrets
        self.system_env = dict(system_env or {})
        self.workflow_name = workflow_name
        self.workflow_uid = workflow_uid or str(uuid.uuid4())[:8]
        self._sleep = sleep

        self.outputs = OutputStore()
        self.records: dict[str, StepRecord] = {}
        self._step_errors: dict[str, PipelineError] = {}
        self._resolver = ExpressionResolver(variables=variables, secrets=secrets, outputs=self.outputs)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stages_task: asyncio.Task[tuple[str | None, PipelineError | None]] | None = None
        self._cancel_requested = False
        self._started = False

    def run(self) -> PipelineResult:
        """Run the pipeline to completion (blocking).

        Raises:
            PolicyError: If the pipeline violates its type policy. No step runs.
        """
        return asyncio.run(self.run_async())

    def cancel(self) -> None:
        """Request cancellation. Safe to call from any thread."""
        self._cancel_requested = True
        loop, task = self._loop, self._stages_task
        if loop is not None and task is not None and not task.done():
            loop.call_soon_threadsafe(task.cancel)

    async def run_async(self) -> PipelineResult:
        """Run the pipeline on the current event loop.

        Raises:
            PolicyError: If the pipeline violates its type policy. No step runs.
            RuntimeError: If the engine has already been run.
        """
        if self._started:
            raise RuntimeError("PipelineEngine instances can only be run once")
        self._started = True

        PolicyEnforcer(self.policy, self.registry).enforce(self.pipeline)

        self.records = {
            step.name: StepRecord(name=step.name, stage=index) for index, step in self.pipeline.iter_steps()
        }
        result = PipelineResult(
            outcome=PipelineOutcome.SUCCEEDED,
            workflow_uid=self.workflow_uid,
            steps=self.records,
            started_at=datetime.now(UTC),
        )
        logger.info(
            f"Starting {self.pipeline_type.value} pipeline {self.workflow_name} ({self.workflow_uid}): "
            f"{len(self.pipeline.stages)} stage(s), {len(self.records)} step(s)"
        )

        if self._cancel_requested:
            return self._finish(result, PipelineOutcome.CANCELLED)

        self._loop = asyncio.get_running_loop()
        self._stages_task = asyncio.create_task(self._run_stages())
        deadline = self.policy.max_timeout

        try:
            if deadline is not None:
                failed_step, error = await asyncio.wait_for(self._stages_task, deadline)
            else:
                failed_step, error = await self._stages_task
        except TimeoutError:
            timeout_error = PipelineTimeoutError(
                f"Pipeline exceeded its deadline of {format_duration(deadline)}",
                timeout_seconds=deadline,
            )
            logger.error(str(timeout_error))
            result.error_kind = timeout_error.kind
            result.error = str(timeout_error)
            return self._finish(result, PipelineOutcome.FAILED)
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            logger.warning(f"Pipeline {self.workflow_name} cancelled")
            return self._finish(result, PipelineOutcome.CANCELLED)

        if failed_step is not None:
            result.failed_step = failed_step
            result.error_kind = error.kind if error else None
            result.error = str(error) if error else None
            return self._finish(result, PipelineOutcome.FAILED)

        if any(r.state == StepState.TOLERATED for r in self.records.values()):
            return self._finish(result, PipelineOutcome.SUCCEEDED_WITH_TOLERANCES)
        return self._finish(result, PipelineOutcome.SUCCEEDED)

    def _finish(self, result: PipelineResult, outcome: PipelineOutcome) -> PipelineResult:
        result.outcome = outcome
        result.finished_at = datetime.now(UTC)
        logger.info(f"Pipeline {self.workflow_name} finished: {outcome.value} in {result.duration_seconds}s")
        return result

    # Stages

    async def _run_stages(self) -> tuple[str | None, PipelineError | None]:
        """Run stages in order; return (failed step, error) on abort."""
        for index, stage in enumerate(self.pipeline.stages):
            logger.debug(f"Stage {index}: {', '.join(s.name for s in stage.steps)}")
            if isinstance(stage, ParallelGroup):
                failed = await self._run_group(stage)
            else:
                record = await self._run_step(stage.step)
                failed = record if record.state == StepState.FAILED else None

            if failed is not None:
                logger.error(f"Step {failed.name} failed; aborting pipeline at stage {index}")
                return failed.name, self._step_errors.get(failed.name)
        return None, None

    async def _run_group(self, group: ParallelGroup) -> StepRecord | None:
        """Fan out a parallel group; cancel the survivors on the first untolerated failure."""
        tasks = [asyncio.create_task(self._run_step(step), name=step.name) for step in group.steps]
        pending: set[asyncio.Task[StepRecord]] = set(tasks)
        failed: StepRecord | None = None

        try:
            while pending and failed is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    record = task.result()
                    if record.state == StepState.FAILED and failed is None:
                        failed = record
        finally:
            unfinished = [task for task in tasks if not task.done()]
            if unfinished:
                names = ", ".join(task.get_name() for task in unfinished)
                logger.warning(f"Cancelling {len(unfinished)} running step(s): {names}")
                for task in unfinished:
                    task.cancel()
                await asyncio.gather(*unfinished, return_exceptions=True)

        return failed

    # Steps

    async def _run_step(self, step: Step) -> StepRecord:
        record = self.records[step.name]
        try:
            return await self._execute(step, record)
        except asyncio.CancelledError:
            record.state = StepState.CANCELLED
            record.finished_at = datetime.now(UTC)
            logger.warning(f"Step {step.name} cancelled")
            raise

    async def _execute(self, step: Step, record: StepRecord) -> StepRecord:
        context = self._context(step)

        if step.when is not None:
            try:
                should_run = evaluate_condition(self._resolver.resolve(step.when, context))
            except ExpressionError as e:
                return self._fail(step, record, _AttemptFailed(FailureClass.ERROR, e, retryable=False))
            if not should_run:
                record.state = StepState.SKIPPED
                record.finished_at = datetime.now(UTC)
                logger.info(f"Step {step.name} skipped (when: {step.when})")
                return record

        record.state = StepState.ELIGIBLE
        record.started_at = datetime.now(UTC)

        try:
            prepared = self._prepare(step, context)
        except ExpressionError as e:
            return self._fail(step, record, _AttemptFailed(FailureClass.ERROR, e, retryable=False))

        strategy = step.retry_strategy
        max_attempts = 1 + (strategy.limit if strategy else 0)

        for attempt in range(1, max_attempts + 1):
            record.attempts = attempt
            record.state = StepState.RUNNING
            logger.info(f"Step {step.name} running (attempt {attempt}/{max_attempts})")
            try:
                outcome = await self._attempt(step, prepared, attempt)
            except _AttemptFailed as failure:
                record.exit_code = failure.outcome.exit_code if failure.outcome else None
                retry = (
                    strategy is not None
                    and failure.retryable
                    and attempt < max_attempts
                    and _should_retry(strategy.retry_policy, failure.failure_class)
                )
                if not retry:
                    return self._fail(step, record, failure, prepared=prepared)

                delay = strategy.delay_for(attempt)
                logger.warning(
                    f"Step {step.name} attempt {attempt}/{max_attempts} failed "
                    f"({failure.failure_class.value}: {failure.error}); retrying in {delay:g}s"
                )
                if delay > 0:
                    await self._sleep(delay)
                continue

            record.exit_code = outcome.exit_code
            values = _collect_outputs(outcome, prepared)
            stored = self.outputs.record(step.name, values)
            record.outputs = dict(stored.values)
            record.state = StepState.SUCCEEDED
            record.finished_at = datetime.now(UTC)
            logger.info(f"Step {step.name} succeeded after {attempt} attempt(s)")
            return record

        raise AssertionError("unreachable")  # pragma: no cover

    async def _attempt(self, step: Step, prepared: _PreparedStep, attempt: int) -> StepOutcome:
        request = prepared.request.model_copy(update={"attempt": attempt})
        timeout = step.timeout_seconds

        try:
            if timeout is not None:
                outcome = await asyncio.wait_for(self.runner.run(request), timeout)
            else:
                outcome = await self.runner.run(request)
        except TimeoutError as e:
            raise _AttemptFailed(
                FailureClass.FAILURE,
                StepTimeoutError(f"Step '{step.name}' exceeded its timeout of {step.timeout}", timeout_seconds=timeout),
            ) from e
        except ExecutionError as e:
            raise _AttemptFailed(FailureClass.ERROR, e) from e
        except Exception as e:
            raise _AttemptFailed(
                FailureClass.ERROR,
                InfrastructureError(f"Runner raised {type(e).__name__}: {e}"),
            ) from e

        if outcome.error is not None:
            raise _AttemptFailed(FailureClass.ERROR, InfrastructureError(outcome.error), outcome=outcome)
        if outcome.exit_code != 0:
            raise _AttemptFailed(
                FailureClass.FAILURE,
                StepFailedError(
                    f"Step '{step.name}' exited with code {outcome.exit_code}",
                    exit_code=outcome.exit_code,
                    attempts=attempt,
                ),
                outcome=outcome,
            )
        return outcome

    def _fail(
        self,
        step: Step,
        record: StepRecord,
        failure: _AttemptFailed,
        *,
        prepared: _PreparedStep | None = None,
    ) -> StepRecord:
        """Terminal failure: Tolerated under continueOn, otherwise Failed."""
        record.failure_class = failure.failure_class
        record.error_kind = failure.error.kind
        record.error = str(failure.error)
        record.finished_at = datetime.now(UTC)
        self._step_errors[step.name] = failure.error

        if _tolerates(step, failure.failure_class):
            partial = _collect_outputs(failure.outcome, prepared) if failure.outcome and prepared else {}
            declared = prepared.declared_outputs if prepared else self._declared_output_names(step)
            stored = self.outputs.record(step.name, partial, declared=declared, tolerated=True)
            record.outputs = dict(stored.values)
            record.state = StepState.TOLERATED
            logger.warning(f"Step {step.name} failed but tolerated by continueOn: {failure.error}")
        else:
            record.state = StepState.FAILED
            # Expression failures end the step before any attempt is dispatched.
            attempts = f" after {record.attempts} attempt(s)" if record.attempts else " before dispatch"
            logger.error(f"Step {step.name} failed{attempts} ({failure.failure_class.value}): {failure.error}")
        return record

    # Request preparation

    def _context(self, step: Step) -> ResolutionContext:
        return ResolutionContext(
            arguments=self.pipeline.global_arguments(),
            workflow={
                "uid": self.workflow_uid,
                "name": self.workflow_name,
                "type": self.pipeline_type.value,
            },
            step_name=step.name,
        )

    def _prepare(self, step: Step, context: ResolutionContext) -> _PreparedStep:
        """Resolve the step's template and substitute every expression.

        Raises:
            ExpressionError: If an expression cannot be resolved.
        """
        resolve = self._resolver.resolve
        arguments = {p.name: resolve(p.value, context) for p in step.arguments.parameters if p.value is not None}

        directive = step.directive
        template: TemplateDefinition | None = None
        if isinstance(directive, TemplateRef):
            resolved = self.registry.resolve(directive.name, path=f"steps.{step.name}.template")
            if isinstance(resolved, BuiltinRef):
                directive = resolved
            else:
                template = resolved
                directive = template.directive

        inputs = self._bind_inputs(template, arguments, context)
        scoped = context.with_inputs(inputs)

        script = directive.script if isinstance(directive, Script) else None
        template_env = [*(template.env if template else []), *(script.env if script else [])]
        env = self._effective_env(template_env, step.env, scoped)

        request: dict[str, Any] = {
            "step_name": step.name,
            "parameters": inputs,
            "env": env,
            "resources": step.resources
            or (template.resources if template else None)
            or (script.resources if script else None),
            "volume_mounts": _merge_mounts(
                [*(template.volume_mounts if template else []), *(script.volume_mounts if script else [])],
                step.volume_mounts,
            ),
            "timeout": step.timeout_seconds,
            "workflow_uid": self.workflow_uid,
        }
        image = step.image or (template.image if template else None)

        if isinstance(directive, InlineScript):
            request.update(kind="inlineScript", script=resolve(directive.text, scoped))
            request["image"] = image or self.settings.default_image
        elif isinstance(directive, Script):
            request.update(
                kind="script",
                script=resolve(directive.script.source, scoped),
                command=[resolve(c, scoped) for c in directive.script.command],
                image=directive.script.image or image or self.settings.default_image,
            )
        elif isinstance(directive, ContainerSet):
            request.update(
                kind="containerSet",
                containers=[self._resolve_container(c, scoped, image) for c in directive.containers],
                image=image,
            )
        else:
            request.update(kind="builtin", builtin=directive.reference, image=image)

        declared: dict[str, str] = {}
        defaults: dict[str, str] = {}
        if template is not None:
            for param in template.outputs.parameters:
                declared[param.name] = resolve(param.value_from.path, scoped)
                if param.value_from.default is not None:
                    defaults[param.name] = param.value_from.default
        request["outputs"] = declared

        return _PreparedStep(request=StepRequest(**request), declared_outputs=declared, output_defaults=defaults)

    def _bind_inputs(
        self,
        template: TemplateDefinition | None,
        arguments: dict[str, str],
        context: ResolutionContext,
    ) -> dict[str, str]:
        """Bind a step's arguments to its template's declared inputs.

        Defaults are resolved in the step's context. A declared input with
        neither an argument nor a default is unresolved.
        """
        if template is None:
            return dict(arguments)

        inputs = dict(arguments)
        for param in template.inputs.parameters:
            if param.name in arguments:
                continue
            if param.value is None:
                raise UnresolvedReferenceError(
                    f"inputs.parameters.{param.name}",
                    f"template '{template.name}' input has no argument and no default",
                )
            inputs[param.name] = self._resolver.resolve(param.value, context)
        return inputs

    def _effective_env(
        self,
        template_env: list[EnvVar],
        step_env: list[EnvVar],
        context: ResolutionContext,
    ) -> dict[str, str]:
        """Merge env levels: system < global arguments < template < step.

        Only the winning declaration of each name is resolved. A global
        argument that cannot be resolved is left out of the env; the step only
        fails if it references the argument explicitly.
        """
        winners: dict[str, tuple[str, str]] = {}
        for name, value in self.system_env.items():
            winners[name] = ("system", value)
        for name in context.arguments:
            if ENV_NAME_PATTERN.match(name):
                winners[name] = ("argument", name)
        for var in template_env:
            winners[var.name] = ("declared", var.value)
        for var in step_env:
            winners[var.name] = ("declared", var.value)

        env: dict[str, str] = {}
        for name, (source, value) in winners.items():
            if source == "system":
                env[name] = value
            elif source == "argument":
                try:
                    env[name] = self._resolver.resolve_token(f"arguments.parameters.{value}", context)
                except ExpressionError as e:
                    logger.debug(f"Step {context.step_name}: global argument {name} not exported to env ({e.kind})")
            else:
                env[name] = self._resolver.resolve(value, context)
        return env

    def _declared_output_names(self, step: Step) -> list[str]:
        if step.template is None:
            return []
        template = self.registry.resolve(step.template)
        if isinstance(template, BuiltinRef):
            return []
        return [param.name for param in template.outputs.parameters]

    def _resolve_container(self, container: Container, context: ResolutionContext, image: str | None) -> Container:
        resolve = self._resolver.resolve
        return container.model_copy(
            update={
                "image": container.image or image,
                "command": [resolve(c, context) for c in container.command],
                "args": [resolve(a, context) for a in container.args],
                "env": [EnvVar(name=e.name, value=resolve(e.value, context)) for e in container.env],
            }
        )


def _should_retry(policy: RetryPolicy, failure_class: FailureClass) -> bool:
    if policy == RetryPolicy.ALWAYS:
        return True
    if policy == RetryPolicy.ON_FAILURE:
        return failure_class == FailureClass.FAILURE
    return failure_class == FailureClass.ERROR


def _tolerates(step: Step, failure_class: FailureClass) -> bool:
    """continueOn.error tolerates any failure; continueOn.failed only the Failure class."""
    continue_on = step.continue_on
    if continue_on is None:
        return False
    return continue_on.error or (continue_on.failed and failure_class == FailureClass.FAILURE)


def _collect_outputs(outcome: StepOutcome | None, prepared: _PreparedStep | None) -> dict[str, str]:
    """Outputs reported by the runner, with declared defaults filling gaps."""
    values = dict(outcome.outputs) if outcome else {}
    if prepared is not None:
        for name, default in prepared.output_defaults.items():
            values.setdefault(name, default)
    return values


def _merge_mounts(base: list, override: list) -> list:
    merged = {m.name: m for m in base}
    merged.update({m.name: m for m in override})
    return list(merged.values())
