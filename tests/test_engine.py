"""Tests for the pipeline execution engine."""

from __future__ import annotations

import asyncio
import json

import pytest

from choreo_pipeline.config import EngineSettings, PipelineType
from choreo_pipeline.engine import (
    FailureClass,
    PipelineEngine,
    PipelineOutcome,
    PipelineResult,
    StepState,
)
from choreo_pipeline.errors import DuplicateStepNameError, ResourceLimitExceededError
from choreo_pipeline.loader import load_pipeline, parse_pipeline
from choreo_pipeline.models import PipelineDefinition, Step, StepStage
from choreo_pipeline.policy import PipelinePolicy
from choreo_pipeline.runners import StepOutcome, StepRequest
from choreo_pipeline.testing import FakeRunner, make_accessor


def make_engine(document: dict, runner: FakeRunner | None = None, **kwargs) -> PipelineEngine:
    kwargs.setdefault("workflow_uid", "run-1")
    return PipelineEngine(parse_pipeline(document), runner or FakeRunner(), **kwargs)


def run(document: dict, runner: FakeRunner | None = None, **kwargs) -> PipelineResult:
    return make_engine(document, runner, **kwargs).run()


def inline(name: str, script: str = "true", **fields) -> dict:
    return {"name": name, "inlineScript": script, **fields}


class CrashingRunner(FakeRunner):
    """FakeRunner whose run raises an unexpected exception for chosen steps."""

    def __init__(self, *crashing: str) -> None:
        super().__init__()
        self.crashing = set(crashing)

    async def run(self, request: StepRequest) -> StepOutcome:
        outcome = await super().run(request)
        if request.step_name in self.crashing:
            raise RuntimeError("runner bug")
        return outcome


class TestSequentialExecution:
    """Tests for stage ordering and fail-fast."""

    def test_all_steps_succeed(self):
        runner = FakeRunner()
        result = run({"steps": [inline("a"), inline("b"), inline("c")]}, runner)

        assert result.outcome == PipelineOutcome.SUCCEEDED
        assert result.succeeded
        assert runner.executed() == ["a", "b", "c"]
        assert result.steps_in_state(StepState.SUCCEEDED) == ["a", "b", "c"]
        assert result.workflow_uid == "run-1"
        assert result.failed_step is None

    def test_failure_aborts_later_stages(self):
        runner = FakeRunner().script("b", exit_codes=[2])
        result = run({"steps": [inline("a"), inline("b"), inline("c")]}, runner)

        assert result.outcome == PipelineOutcome.FAILED
        assert not result.succeeded
        assert result.failed_step == "b"
        assert result.error_kind == "StepFailedError"
        assert runner.executed() == ["a", "b"]
        assert result.state_of("b") == StepState.FAILED
        assert result.state_of("c") == StepState.PENDING

        record = result.steps["b"]
        assert record.exit_code == 2
        assert record.attempts == 1
        assert record.failure_class == FailureClass.FAILURE

    def test_infrastructure_error_is_error_class(self):
        runner = FakeRunner().script("a", error="node lost")
        result = run({"steps": [inline("a")]}, runner)

        record = result.steps["a"]
        assert record.state == StepState.FAILED
        assert record.failure_class == FailureClass.ERROR
        assert record.error_kind == "InfrastructureError"
        assert "node lost" in record.error

    def test_raised_infrastructure_error_is_error_class(self):
        runner = FakeRunner().script("a", error="scheduler unavailable", raise_error=True)
        result = run({"steps": [inline("a")]}, runner)

        assert result.steps["a"].failure_class == FailureClass.ERROR
        assert result.error_kind == "InfrastructureError"

    def test_unexpected_runner_exception_fails_step(self):
        runner = CrashingRunner("a")
        result = run({"steps": [inline("a"), inline("b")]}, runner)

        assert result.outcome == PipelineOutcome.FAILED
        record = result.steps["a"]
        assert record.state == StepState.FAILED
        assert record.failure_class == FailureClass.ERROR
        assert record.error_kind == "InfrastructureError"
        assert "Runner raised RuntimeError: runner bug" in record.error
        assert result.state_of("b") == StepState.PENDING

    def test_unexpected_runner_exception_retried_and_tolerated(self):
        runner = CrashingRunner("a")
        document = {
            "steps": [
                inline("a", retryStrategy={"limit": 2, "retryPolicy": "OnError"}, continueOn={"error": True}),
                inline("b"),
            ]
        }
        result = run(document, runner)

        assert runner.attempts("a") == 3
        assert result.state_of("a") == StepState.TOLERATED
        assert result.outcome == PipelineOutcome.SUCCEEDED_WITH_TOLERANCES


class TestParallelGroups:
    """Tests for fan-out / fan-in of parallel groups."""

    def test_group_runs_concurrently(self):
        runner = FakeRunner().script("a", delay=0.2).script("b", delay=0.2).script("c", delay=0.2)
        result = run({"steps": [[inline("a"), inline("b"), inline("c")], inline("after")]}, runner)

        assert result.outcome == PipelineOutcome.SUCCEEDED
        assert set(runner.completed[:3]) == {"a", "b", "c"}
        assert runner.completed[-1] == "after"
        assert result.duration_seconds < 0.5

    def test_failure_cancels_running_siblings(self):
        runner = FakeRunner().script("boom", exit_codes=[1]).script("slow", delay=5)
        result = run({"steps": [[inline("boom"), inline("slow")], inline("after")]}, runner)

        assert result.outcome == PipelineOutcome.FAILED
        assert result.failed_step == "boom"
        assert result.state_of("boom") == StepState.FAILED
        assert result.state_of("slow") == StepState.CANCELLED
        assert result.state_of("after") == StepState.PENDING
        assert runner.cancelled == ["slow"]
        assert "after" not in runner.executed()
        assert result.duration_seconds < 5

    def test_tolerated_failure_does_not_cancel_siblings(self):
        runner = FakeRunner().script("flaky", exit_codes=[1]).script("slow", delay=0.1)
        document = {"steps": [[inline("flaky", continueOn={"failed": True}), inline("slow")]]}
        result = run(document, runner)

        assert result.outcome == PipelineOutcome.SUCCEEDED_WITH_TOLERANCES
        assert result.state_of("slow") == StepState.SUCCEEDED
        assert runner.cancelled == []


class TestRetries:
    """Tests for retryStrategy handling."""

    def test_retry_limit_bounds_executions(self):
        runner = FakeRunner().script("flaky", exit_codes=[1])
        result = run({"steps": [inline("flaky", retryStrategy={"limit": 3})]}, runner)

        assert result.outcome == PipelineOutcome.FAILED
        assert runner.attempts("flaky") == 4
        assert result.steps["flaky"].attempts == 4
        assert [r.attempt for r in runner.requests_for("flaky")] == [1, 2, 3, 4]

    def test_retry_until_success(self):
        runner = FakeRunner().script("flaky", exit_codes=[1, 1, 0])
        result = run({"steps": [inline("flaky", retryStrategy={"limit": 3})]}, runner)

        assert result.outcome == PipelineOutcome.SUCCEEDED
        assert runner.attempts("flaky") == 3
        assert result.steps["flaky"].exit_code == 0

    def test_on_failure_does_not_retry_errors(self):
        runner = FakeRunner().script("a", error="node lost")
        run({"steps": [inline("a", retryStrategy={"limit": 2})]}, runner)

        assert runner.attempts("a") == 1

    def test_on_error_does_not_retry_failures(self):
        runner = FakeRunner().script("a", exit_codes=[1])
        run({"steps": [inline("a", retryStrategy={"limit": 2, "retryPolicy": "OnError"})]}, runner)

        assert runner.attempts("a") == 1

    def test_on_error_retries_errors(self):
        runner = FakeRunner().script("a", error="node lost")
        run({"steps": [inline("a", retryStrategy={"limit": 2, "retryPolicy": "OnError"})]}, runner)

        assert runner.attempts("a") == 3

    def test_always_retries_both_classes(self):
        runner = FakeRunner().script("a", error="node lost").script("b", exit_codes=[1])
        document = {
            "steps": [
                [
                    inline("a", retryStrategy={"limit": 1, "retryPolicy": "Always"}, continueOn={"error": True}),
                    inline("b", retryStrategy={"limit": 1, "retryPolicy": "Always"}, continueOn={"failed": True}),
                ]
            ]
        }
        run(document, runner)

        assert runner.attempts("a") == 2
        assert runner.attempts("b") == 2

    def test_backoff_delays(self):
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        runner = FakeRunner().script("a", exit_codes=[1])
        strategy = {"limit": 4, "backoff": {"duration": "1s", "factor": 2, "maxDuration": "5s"}}
        run({"steps": [inline("a", retryStrategy=strategy)]}, runner, sleep=fake_sleep)

        assert delays == [1.0, 2.0, 4.0, 5.0]

    def test_no_backoff_no_sleep(self):
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        runner = FakeRunner().script("a", exit_codes=[1])
        run({"steps": [inline("a", retryStrategy={"limit": 2})]}, runner, sleep=fake_sleep)

        assert delays == []


class TestContinueOn:
    """Tests for continueOn tolerances."""

    def test_tolerated_failures(self):
        runner = FakeRunner().script("a", exit_codes=[1]).script("c", error="node lost")
        document = {
            "steps": [
                inline("a", continueOn={"failed": True}),
                inline("b"),
                inline("c", continueOn={"error": True}),
            ]
        }
        result = run(document, runner)

        assert result.outcome == PipelineOutcome.SUCCEEDED_WITH_TOLERANCES
        assert result.succeeded
        assert result.state_of("a") == StepState.TOLERATED
        assert result.state_of("b") == StepState.SUCCEEDED
        assert result.state_of("c") == StepState.TOLERATED
        assert result.failed_step is None
        assert runner.executed() == ["a", "b", "c"]

    def test_continue_on_failed_does_not_tolerate_errors(self):
        runner = FakeRunner().script("a", error="node lost")
        result = run({"steps": [inline("a", continueOn={"failed": True}), inline("b")]}, runner)

        assert result.outcome == PipelineOutcome.FAILED
        assert result.state_of("a") == StepState.FAILED
        assert result.state_of("b") == StepState.PENDING

    def test_continue_on_error_tolerates_failures(self):
        runner = FakeRunner().script("a", exit_codes=[3])
        result = run({"steps": [inline("a", continueOn={"error": True})]}, runner)

        assert result.state_of("a") == StepState.TOLERATED
        assert result.steps["a"].exit_code == 3

    def test_tolerated_step_outputs_are_empty_strings(self):
        runner = FakeRunner().script("scan", exit_codes=[1])
        document = {
            "steps": [
                {"name": "scan", "template": "scanner", "continueOn": {"failed": True}},
                inline("notify", "echo [{{steps.scan.outputs.parameters.report}}]"),
            ],
            "templates": {
                "scanner": {
                    "inlineScript": "trivy fs . > report.txt",
                    "outputs": {"parameters": [{"name": "report", "valueFrom": {"path": "report.txt"}}]},
                }
            },
        }
        result = run(document, runner)

        assert result.outcome == PipelineOutcome.SUCCEEDED_WITH_TOLERANCES
        assert result.steps["scan"].outputs == {"report": ""}
        assert runner.requests_for("notify")[0].script == "echo []"


class TestTimeouts:
    """Tests for step timeouts and the pipeline deadline."""

    def test_step_timeout(self):
        runner = FakeRunner().script("slow", delay=5)
        result = run({"steps": [inline("slow", timeout="1s")]}, runner)

        record = result.steps["slow"]
        assert result.outcome == PipelineOutcome.FAILED
        assert record.state == StepState.FAILED
        assert record.failure_class == FailureClass.FAILURE
        assert record.error_kind == "StepTimeoutError"
        assert runner.cancelled == ["slow"]

    def test_step_timeout_tolerated_by_continue_on_failed(self):
        runner = FakeRunner().script("slow", delay=5)
        result = run({"steps": [inline("slow", timeout="1s", continueOn={"failed": True}), inline("next")]}, runner)

        assert result.outcome == PipelineOutcome.SUCCEEDED_WITH_TOLERANCES
        assert result.state_of("next") == StepState.SUCCEEDED

    def test_pipeline_deadline(self):
        runner = FakeRunner().script("slow", delay=5)
        policy = PipelinePolicy(pipeline_type=PipelineType.AUTOMATION, max_timeout=0.2)
        result = run({"steps": [inline("slow"), inline("after")]}, runner, policy=policy)

        assert result.outcome == PipelineOutcome.FAILED
        assert result.error_kind == "PipelineTimeoutError"
        assert result.state_of("slow") == StepState.CANCELLED
        assert result.state_of("after") == StepState.PENDING
        assert runner.cancelled == ["slow"]


class TestConditions:
    """Tests for when conditions."""

    def test_false_condition_skips_step(self):
        runner = FakeRunner()
        document = {
            "arguments": [{"name": "env", "value": "staging"}],
            "steps": [
                inline("deploy", when="'{{arguments.parameters.env}}' == 'production'"),
                inline("report"),
            ],
        }
        result = run(document, runner)

        assert result.outcome == PipelineOutcome.SUCCEEDED
        assert result.state_of("deploy") == StepState.SKIPPED
        assert runner.executed() == ["report"]

    def test_true_condition_runs_step(self):
        runner = FakeRunner().script("build", outputs={"ok": "true"})
        document = {
            "steps": [
                inline("build"),
                inline("deploy", when="{{steps.build.outputs.parameters.ok}} == true"),
            ]
        }
        result = run(document, runner)

        assert result.state_of("deploy") == StepState.SUCCEEDED

    def test_condition_on_skipped_step_output_fails(self):
        document = {
            "steps": [
                inline("build", when="false"),
                inline("deploy", when="{{steps.build.outputs.parameters.ok}} == true"),
            ]
        }
        result = run(document)

        assert result.state_of("build") == StepState.SKIPPED
        assert result.state_of("deploy") == StepState.FAILED
        assert result.error_kind == "UnresolvedReferenceError"

    def test_unresolved_condition_is_not_retried(self):
        runner = FakeRunner()
        document = {
            "steps": [
                inline("a", when="{{VARIABLES.MISSING}} == x", retryStrategy={"limit": 3, "retryPolicy": "Always"}),
            ]
        }
        result = run(document, runner)

        record = result.steps["a"]
        assert record.state == StepState.FAILED
        assert record.failure_class == FailureClass.ERROR
        assert record.attempts == 0
        assert runner.calls == []

    def test_expression_failure_logged_before_dispatch(self, caplog):
        document = {"steps": [inline("a", when="{{VARIABLES.MISSING}} == x")]}

        with caplog.at_level("ERROR", logger="choreo_pipeline.engine"):
            run(document)

        assert "Step a failed before dispatch (Error)" in caplog.text
        assert "0 attempt(s)" not in caplog.text

    def test_invalid_condition_tolerated_by_continue_on_error(self):
        result = run({"steps": [inline("a", when="maybe", continueOn={"error": True})]})

        assert result.state_of("a") == StepState.TOLERATED
        assert result.steps["a"].error_kind == "InvalidConditionError"


class TestRequests:
    """Tests for the requests handed to the runner."""

    def test_outputs_flow_between_steps(self):
        runner = FakeRunner().script("build", outputs={"image": "registry.example.com/app:abc"})
        document = {
            "steps": [
                {"name": "build", "template": "image-build"},
                inline("push", "docker push {{steps.build.outputs.parameters.image}}"),
            ],
            "templates": {
                "image-build": {
                    "inlineScript": "make image",
                    "outputs": {
                        "parameters": [
                            {"name": "image", "valueFrom": {"path": "image.txt"}},
                            {"name": "digest", "valueFrom": {"path": "digest.txt", "default": "none"}},
                        ]
                    },
                }
            },
        }
        result = run(document, runner)

        assert runner.requests_for("build")[0].outputs == {"image": "image.txt", "digest": "digest.txt"}
        assert result.steps["build"].outputs == {"image": "registry.example.com/app:abc", "digest": "none"}
        assert runner.requests_for("push")[0].script == "docker push registry.example.com/app:abc"

    def test_env_precedence(self):
        runner = FakeRunner()
        document = {
            "arguments": [
                {"name": "LOG_LEVEL", "value": "info"},
                {"name": "REGISTRY", "value": "{{workflow.name}}.example.com"},
                {"name": "env", "value": "staging"},
            ],
            "steps": [
                {"name": "templated", "template": "configured", "env": [{"name": "LOG_LEVEL", "value": "trace"}]},
                {"name": "template-only", "template": "configured"},
                inline("plain", "env"),
            ],
            "templates": {
                "configured": {
                    "inlineScript": "env",
                    "env": [
                        {"name": "LOG_LEVEL", "value": "debug"},
                        {"name": "TARGET", "value": "{{arguments.parameters.env}}"},
                    ],
                }
            },
        }
        run(
            document,
            runner,
            system_env={"WORKSPACE": "/workspace", "LOG_LEVEL": "system"},
            workflow_name="ci",
        )

        templated = runner.requests_for("templated")[0].env
        assert templated == {
            "WORKSPACE": "/workspace",
            "LOG_LEVEL": "trace",
            "REGISTRY": "ci.example.com",
            "TARGET": "staging",
        }
        assert runner.requests_for("template-only")[0].env["LOG_LEVEL"] == "debug"
        plain = runner.requests_for("plain")[0].env
        assert plain["LOG_LEVEL"] == "info"
        assert "env" not in plain
        assert "TARGET" not in plain

    def test_unresolvable_argument_only_fails_steps_that_use_it(self):
        runner = FakeRunner()
        document = {
            "arguments": [
                {"name": "TAG", "value": "{{VARIABLES.RELEASE_TAG}}"},
                {"name": "LOG_LEVEL", "value": "info"},
            ],
            "steps": [
                inline("unrelated", "make"),
                inline("tagger", "docker tag app {{arguments.parameters.TAG}}"),
            ],
        }
        result = run(document, runner)

        assert result.state_of("unrelated") == StepState.SUCCEEDED
        env = runner.requests_for("unrelated")[0].env
        assert env == {"LOG_LEVEL": "info"}
        assert result.failed_step == "tagger"
        assert result.error_kind == "UnresolvedReferenceError"
        assert runner.executed() == ["unrelated"]

    def test_step_env_overrides_unresolvable_argument(self):
        runner = FakeRunner()
        document = {
            "arguments": [{"name": "TAG", "value": "{{VARIABLES.RELEASE_TAG}}"}],
            "steps": [inline("a", "make", env=[{"name": "TAG", "value": "latest"}])],
        }
        result = run(document, runner)

        assert result.succeeded
        assert runner.requests_for("a")[0].env == {"TAG": "latest"}

    def test_input_binding(self):
        runner = FakeRunner()
        document = {
            "steps": [
                {"name": "release", "template": "publish", "arguments": [{"name": "tag", "value": "{{workflow.uid}}"}]},
                {"name": "latest", "template": "publish"},
            ],
            "templates": {
                "publish": {
                    "inlineScript": "./publish.sh {{inputs.parameters.tag}}",
                    "inputs": {"parameters": [{"name": "tag", "value": "latest"}]},
                }
            },
        }
        run(document, runner, workflow_uid="run-42")

        release = runner.requests_for("release")[0]
        assert release.parameters == {"tag": "run-42"}
        assert release.script == "./publish.sh run-42"
        assert runner.requests_for("latest")[0].script == "./publish.sh latest"

    def test_missing_required_input(self):
        runner = FakeRunner()
        document = {
            "steps": [{"name": "deploy", "template": "deployer"}],
            "templates": {
                "deployer": {
                    "inlineScript": "deploy {{inputs.parameters.target}}",
                    "inputs": {"parameters": [{"name": "target"}]},
                }
            },
        }
        result = run(document, runner)

        record = result.steps["deploy"]
        assert record.state == StepState.FAILED
        assert record.failure_class == FailureClass.ERROR
        assert "inputs.parameters.target" in record.error
        assert runner.calls == []

    def test_builtin_request(self):
        runner = FakeRunner()
        document = {
            "steps": [
                {
                    "name": "build",
                    "template": "choreo/docker-build@v1",
                    "arguments": [{"name": "dockerfile", "value": "Dockerfile"}],
                }
            ]
        }
        run(document, runner)

        request = runner.requests_for("build")[0]
        assert request.kind == "builtin"
        assert request.builtin == "choreo/docker-build@v1"
        assert request.parameters == {"dockerfile": "Dockerfile"}

    def test_inline_script_default_image(self):
        runner = FakeRunner()
        settings = EngineSettings(default_image="busybox:1.36")
        run({"steps": [inline("a"), inline("b", image="python:3.12")]}, runner, settings=settings)

        assert runner.requests_for("a")[0].image == "busybox:1.36"
        assert runner.requests_for("b")[0].image == "python:3.12"

    def test_container_set_request(self):
        runner = FakeRunner()
        document = {
            "arguments": [{"name": "target", "value": "prod"}],
            "steps": [
                {
                    "name": "multi",
                    "image": "alpine:3.20",
                    "containerSet": [
                        {"name": "main", "command": ["sh", "-c"], "args": ["deploy {{arguments.parameters.target}}"]},
                        {"name": "sidecar", "image": "envoy:1.30", "command": ["envoy"]},
                    ],
                }
            ],
        }
        run(document, runner)

        request = runner.requests_for("multi")[0]
        assert request.kind == "containerSet"
        main, sidecar = request.containers
        assert main.image == "alpine:3.20"
        assert main.args == ["deploy prod"]
        assert sidecar.image == "envoy:1.30"

    def test_variables_and_secrets(self):
        runner = FakeRunner()
        document = {"steps": [inline("a", "echo {{VARIABLES.GREETING}} {{SECRETS.ORG.TOKEN}}")]}
        run(
            document,
            runner,
            variables=make_accessor({"GREETING": "hello"}),
            secrets=make_accessor(ORG={"TOKEN": "s3cr3t"}),
        )

        assert runner.requests_for("a")[0].script == "echo hello s3cr3t"


class TestLifecycle:
    """Tests for policy, cancellation and engine lifecycle."""

    def test_policy_violation_runs_nothing(self):
        runner = FakeRunner()
        document = {
            "steps": [
                {"name": "build", "template": "choreo/docker-build@v1"},
                inline("compile", resources={"limits": {"memory": "16Gi"}}),
            ]
        }
        engine = make_engine(
            document,
            runner,
            pipeline_type=PipelineType.BUILD,
            settings=EngineSettings(build_max_memory="8Gi"),
        )

        with pytest.raises(ResourceLimitExceededError):
            engine.run()
        assert runner.calls == []

    def test_structural_errors_raised_at_construction(self):
        pipeline = PipelineDefinition(
            stages=(
                StepStage(Step(name="a", inline_script="x")),
                StepStage(Step(name="a", inline_script="y")),
            )
        )
        with pytest.raises(DuplicateStepNameError):
            PipelineEngine(pipeline, FakeRunner())

    def test_cancel_during_run(self):
        runner = FakeRunner().script("slow", delay=5)
        engine = make_engine({"steps": [inline("slow"), inline("after")]}, runner)

        async def scenario() -> PipelineResult:
            task = asyncio.create_task(engine.run_async())
            while not runner.calls:
                await asyncio.sleep(0.01)
            engine.cancel()
            return await task

        result = asyncio.run(scenario())

        assert result.outcome == PipelineOutcome.CANCELLED
        assert result.state_of("slow") == StepState.CANCELLED
        assert result.state_of("after") == StepState.PENDING
        assert runner.cancelled == ["slow"]

    def test_cancel_before_run(self):
        runner = FakeRunner()
        engine = make_engine({"steps": [inline("a")]}, runner)
        engine.cancel()

        result = engine.run()

        assert result.outcome == PipelineOutcome.CANCELLED
        assert result.state_of("a") == StepState.PENDING
        assert runner.calls == []

    def test_engine_runs_once(self):
        engine = make_engine({"steps": [inline("a")]})
        engine.run()

        with pytest.raises(RuntimeError, match="only be run once"):
            engine.run()

    def test_result_serializes(self):
        runner = FakeRunner().script("a", exit_codes=[1])
        result = run({"steps": [inline("a", continueOn={"failed": True})]}, runner)

        data = json.loads(json.dumps(result.to_dict()))
        assert data["outcome"] == "SucceededWithTolerances"
        assert data["workflow_uid"] == "run-1"
        assert data["steps"]["a"]["state"] == "Tolerated"
        assert data["steps"]["a"]["failure_class"] == "Failure"
        assert data["steps"]["a"]["exit_code"] == 1
        assert data["started_at"] is not None


class TestBuildPipeline:
    """End-to-end run of the shared Build pipeline fixture."""

    def test_build_pipeline_succeeds(self, build_pipeline_yaml, settings):
        runner = FakeRunner().script("build", outputs={"image": "registry.example.com/app:1"})
        pipeline = load_pipeline(build_pipeline_yaml)
        engine = PipelineEngine(
            pipeline,
            runner,
            pipeline_type=PipelineType.BUILD,
            settings=settings,
            system_env={"WORKSPACE": "/workspace", "REPOSITORY_DIR": "/workspace/repository", "IMAGE_NAME": ""},
        )

        result = engine.run()

        assert result.outcome == PipelineOutcome.SUCCEEDED
        executed = runner.executed()
        assert executed[0] == "build"
        assert set(executed[1:3]) == {"unit-tests", "lint"}
        assert executed[3] == "publish"

        assert runner.requests_for("unit-tests")[0].env["LOG_LEVEL"] == "debug"
        lint = runner.requests_for("lint")[0]
        assert lint.env["LOG_LEVEL"] == "info"
        assert lint.env["REPOSITORY_DIR"] == "/workspace/repository"
        assert [m.name for m in lint.volume_mounts] == ["cache"]
        assert runner.requests_for("publish")[0].script == "./publish.sh latest"
