"""Tests for pipeline definition models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from choreo_pipeline.models import (
    Arguments,
    Backoff,
    BuiltinRef,
    ContainerSet,
    ContainerTemplateDefinition,
    EnvVar,
    InlineScript,
    Outputs,
    RetryPolicy,
    RetryStrategy,
    Step,
    TemplateDefinition,
    TemplateRef,
    VolumeClaimTemplate,
)


class TestStep:
    """Tests for the Step model."""

    def test_camel_case_aliases(self):
        step = Step.model_validate(
            {
                "name": "build",
                "inlineScript": "make",
                "retryStrategy": {"limit": 2, "retryPolicy": "Always"},
                "continueOn": {"failed": True},
            }
        )
        assert step.inline_script == "make"
        assert step.retry_strategy.limit == 2
        assert step.retry_strategy.retry_policy == RetryPolicy.ALWAYS
        assert step.continue_on.failed is True
        assert step.continue_on.error is False

    def test_requires_exactly_one_directive(self):
        with pytest.raises(ValidationError, match="exactly one"):
            Step.model_validate({"name": "empty"})
        with pytest.raises(ValidationError, match="found: template, inlineScript"):
            Step.model_validate({"name": "both", "template": "t", "inlineScript": "echo"})

    def test_rejects_unknown_keys(self):
        with pytest.raises(ValidationError):
            Step.model_validate({"name": "s", "inlineScript": "echo", "bogus": 1})

    def test_invalid_name(self):
        with pytest.raises(ValidationError, match="must start with a letter"):
            Step.model_validate({"name": "1-bad", "inlineScript": "echo"})

    def test_directive_inline_script(self):
        step = Step(name="s", inline_script="echo hi")
        assert step.directive == InlineScript("echo hi")

    def test_directive_template_reference(self):
        step = Step(name="s", template="run-tests")
        assert step.directive == TemplateRef("run-tests")

    def test_directive_builtin_reference(self):
        step = Step(name="s", template="choreo/docker-build@v1")
        assert step.directive == BuiltinRef(namespace="choreo", name="docker-build", version="v1")
        assert step.directive.reference == "choreo/docker-build@v1"

    def test_malformed_builtin_is_template_ref(self):
        step = Step(name="s", template="choreo/Docker Build")
        assert step.directive == TemplateRef("choreo/Docker Build")

    def test_container_set_accepts_containers_key(self):
        step = Step.model_validate(
            {"name": "s", "containerSet": {"containers": [{"name": "main", "image": "alpine"}]}}
        )
        assert isinstance(step.directive, ContainerSet)
        assert step.directive.containers[0].image == "alpine"

    def test_timeout_parsed(self):
        step = Step(name="s", inline_script="echo", timeout="1h30m")
        assert step.timeout_seconds == 5400.0

    def test_integer_timeout_coerced(self):
        step = Step.model_validate({"name": "s", "inlineScript": "echo", "timeout": 30})
        assert step.timeout == "30"
        assert step.timeout_seconds == 30.0

    def test_invalid_timeout(self):
        with pytest.raises(ValidationError, match="Invalid duration"):
            Step.model_validate({"name": "s", "inlineScript": "echo", "timeout": "soon"})

    def test_models_are_frozen(self):
        step = Step(name="s", inline_script="echo")
        with pytest.raises(ValidationError):
            step.name = "other"


class TestEnvVar:
    """Tests for environment variable declarations."""

    def test_scalar_values_coerced(self):
        assert EnvVar.model_validate({"name": "PORT", "value": 8080}).value == "8080"
        assert EnvVar.model_validate({"name": "DEBUG", "value": True}).value == "true"
        assert EnvVar.model_validate({"name": "EMPTY", "value": None}).value == ""

    def test_lowercase_name_rejected(self):
        with pytest.raises(ValidationError, match="environment variable name"):
            EnvVar(name="lower", value="x")


class TestArguments:
    """Tests for argument parameter lists."""

    def test_bare_list_form(self):
        args = Arguments.model_validate([{"name": "a", "value": 1}, {"name": "b", "value": "two"}])
        assert args.as_dict() == {"a": "1", "b": "two"}

    def test_argo_form(self):
        args = Arguments.model_validate({"parameters": [{"name": "a", "value": "x"}]})
        assert args.as_dict() == {"a": "x"}

    def test_none_is_empty(self):
        assert Arguments.model_validate(None).parameters == []


class TestOutputs:
    """Tests for output parameter declarations."""

    def test_paths(self):
        outputs = Outputs.model_validate([{"name": "image", "valueFrom": {"path": "/tmp/image"}}])
        assert outputs.paths() == {"image": "/tmp/image"}

    def test_path_required(self):
        with pytest.raises(ValidationError, match="requires valueFrom.path"):
            Outputs.model_validate([{"name": "image"}])


class TestRetry:
    """Tests for retry strategies and backoff."""

    def test_defaults(self):
        strategy = RetryStrategy()
        assert strategy.limit == 0
        assert strategy.retry_policy == RetryPolicy.ON_FAILURE
        assert strategy.delay_for(1) == 0.0

    def test_negative_limit_rejected(self):
        with pytest.raises(ValidationError):
            RetryStrategy(limit=-1)

    def test_exponential_backoff_capped(self):
        backoff = Backoff(duration="2s", factor=2, max_duration="5s")
        assert backoff.delay_for(1) == 2.0
        assert backoff.delay_for(2) == 4.0
        assert backoff.delay_for(3) == 5.0

    def test_no_duration_means_no_delay(self):
        assert Backoff(factor=3).delay_for(4) == 0.0

    def test_factor_must_be_positive(self):
        with pytest.raises(ValidationError, match="positive"):
            Backoff(duration="1s", factor=0)


class TestTemplateDefinition:
    """Tests for template definitions."""

    def test_exactly_one_directive(self):
        with pytest.raises(ValidationError, match="found: none"):
            TemplateDefinition(name="t")

    def test_delegate(self):
        assert TemplateDefinition(name="t", template="other").delegate == "other"
        assert TemplateDefinition(name="t", template="choreo/docker-build@v1").delegate is None
        assert TemplateDefinition(name="t", inline_script="echo").delegate is None

    def test_input_defaults(self):
        template = TemplateDefinition.model_validate(
            {
                "name": "t",
                "inlineScript": "echo",
                "inputs": {"parameters": [{"name": "tag", "value": "latest"}, {"name": "required"}]},
            }
        )
        assert template.input_defaults() == {"tag": "latest"}

    def test_container_template_view(self):
        container_template = ContainerTemplateDefinition(
            name="kaniko", image="gcr.io/kaniko", command=["/kaniko/executor"], args=["--no-push"]
        )
        template = container_template.as_template()
        assert isinstance(template.directive, ContainerSet)
        (container,) = template.directive.containers
        assert container.command == ["/kaniko/executor"]
        assert container.args == ["--no-push"]
        assert template.image == "gcr.io/kaniko"


class TestVolumeClaimTemplate:
    """Tests for volume claim templates."""

    def test_metadata_name_lifted(self):
        claim = VolumeClaimTemplate.model_validate({"metadata": {"name": "cache"}, "spec": {}})
        assert claim.name == "cache"

    def test_plain_name(self):
        assert VolumeClaimTemplate.model_validate({"name": "data"}).name == "data"
