"""Testing utilities for pipeline execution.

Provides fakes for the engine's collaborators:
- FakeRunner: a StepRunner scripted per step name
- make_accessor(): build a variables/secrets accessor from plain dicts

Usage:
    from choreo_pipeline.engine import PipelineEngine
    from choreo_pipeline.loader import parse_pipeline
    from choreo_pipeline.testing import FakeRunner, make_accessor

    def test_build_retries():
        pipeline = parse_pipeline(document)
        runner = FakeRunner().script("build", exit_codes=[1, 1, 0])

        result = PipelineEngine(pipeline, runner).run()

        assert result.succeeded
        assert runner.attempts("build") == 3
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from choreo_pipeline.errors import InfrastructureError
from choreo_pipeline.expressions import DEFAULT_SCOPE, MappingAccessor, Scope
from choreo_pipeline.runners.base import StepOutcome, StepRequest


@dataclass
class ScriptedStep:
    """Scripted behaviour of one step.

    Attributes:
        exit_codes: Exit code per attempt; the last one repeats.
        outputs: Outputs reported on every attempt.
        delay: Seconds each attempt runs before reporting.
        error: Infrastructure error message reported instead of an exit code.
        raise_error: Raise InfrastructureError instead of reporting ``error``.
    """

    exit_codes: Sequence[int] = (0,)
    outputs: Mapping[str, str] = field(default_factory=dict)
    delay: float = 0.0
    error: str | None = None
    raise_error: bool = False

    def exit_code_for(self, attempt: int) -> int:
        codes = list(self.exit_codes) or [0]
        return codes[min(attempt, len(codes)) - 1]


class FakeRunner:
    """In-memory StepRunner for engine tests.

    Unscripted steps succeed immediately with no outputs. Every request is
    recorded in ``calls``; steps cancelled mid-run are listed in ``cancelled``.
    """

    def __init__(self, scripts: Mapping[str, ScriptedStep] | None = None) -> None:
        self.scripts: dict[str, ScriptedStep] = dict(scripts or {})
        self.calls: list[StepRequest] = []
        self.completed: list[str] = []
        self.cancelled: list[str] = []
        self._attempts: Counter[str] = Counter()

    def script(
        self,
        step_name: str,
        *,
        exit_codes: Sequence[int] = (0,),
        outputs: Mapping[str, str] | None = None,
        delay: float = 0.0,
        error: str | None = None,
        raise_error: bool = False,
    ) -> FakeRunner:
        """Script a step's behaviour. Returns self for chaining."""
        self.scripts[step_name] = ScriptedStep(
            exit_codes=tuple(exit_codes),
            outputs=dict(outputs or {}),
            delay=delay,
            error=error,
            raise_error=raise_error,
        )
        return self

    async def run(self, request: StepRequest) -> StepOutcome:
        self.calls.append(request)
        self._attempts[request.step_name] += 1
        attempt = self._attempts[request.step_name]
        scripted = self.scripts.get(request.step_name, ScriptedStep())

        try:
            if scripted.delay:
                await asyncio.sleep(scripted.delay)
        except asyncio.CancelledError:
            self.cancelled.append(request.step_name)
            raise

        self.completed.append(request.step_name)
        if scripted.error is not None:
            if scripted.raise_error:
                raise InfrastructureError(scripted.error)
            return StepOutcome(error=scripted.error)
        return StepOutcome(exit_code=scripted.exit_code_for(attempt), outputs=dict(scripted.outputs))

    def attempts(self, step_name: str) -> int:
        """Number of times a step was dispatched."""
        return self._attempts[step_name]

    def executed(self) -> list[str]:
        """Dispatched step names in first-dispatch order."""
        return list(dict.fromkeys(call.step_name for call in self.calls))

    def requests_for(self, step_name: str) -> list[StepRequest]:
        return [call for call in self.calls if call.step_name == step_name]


def make_accessor(values: Mapping[str, Any] | None = None, **scopes: Mapping[str, Any]) -> MappingAccessor:
    """Build a MappingAccessor.

    Unscoped ``values`` land at component scope; keyword arguments name a
    scope explicitly:

        make_accessor({"LOG_LEVEL": "info"}, ORG={"REGION": "eu"})
    """
    data: dict[Scope, dict[str, Any]] = {DEFAULT_SCOPE: dict(values or {})}
    for scope, entries in scopes.items():
        data.setdefault(Scope(scope.upper()), {}).update(entries)
    return MappingAccessor(data)
