"""Engine settings and process-boundary environment.

Parses CHOREO_* environment variables into a typed EngineSettings object.
This is the only place where the engine reads its own configuration from
the environment.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from choreo_pipeline.errors import SettingsError
from choreo_pipeline.units import parse_cpu, parse_duration, parse_memory

UNBOUNDED = ("", "unbounded", "none")


class PipelineType(str, Enum):
    """Kind of pipeline; decides ceilings and required steps."""

    BUILD = "build"
    AUTOMATION = "automation"


class EngineSettings(BaseModel):
    """Engine configuration.

    Ceilings set to None are unbounded.
    """

    build_max_timeout: str | None = Field(default="1h", description="CHOREO_BUILD_MAX_TIMEOUT")
    build_max_memory: str | None = Field(default="4Gi", description="CHOREO_BUILD_MAX_MEMORY")
    build_max_cpu: str | None = Field(default="2", description="CHOREO_BUILD_MAX_CPU")
    automation_max_timeout: str | None = Field(default=None, description="CHOREO_AUTOMATION_MAX_TIMEOUT")
    automation_max_memory: str | None = Field(default=None, description="CHOREO_AUTOMATION_MAX_MEMORY")
    automation_max_cpu: str | None = Field(default=None, description="CHOREO_AUTOMATION_MAX_CPU")
    build_template_patterns: list[str] = Field(
        default_factory=lambda: ["choreo/*build*@*"],
        description="CHOREO_BUILD_TEMPLATE_PATTERNS - comma-separated glob patterns",
    )
    image_name: str = Field(default="", description="CHOREO_IMAGE_NAME - image built by Build pipelines")
    default_image: str = Field(default="alpine:3.20", description="CHOREO_DEFAULT_IMAGE - image for inline scripts")
    runner_url: str = Field(default="", description="CHOREO_RUNNER_URL - remote runner service")
    poll_interval: float = Field(default=2.0, gt=0, description="CHOREO_POLL_INTERVAL - seconds between polls")

    @field_validator("build_max_timeout", "automation_max_timeout", mode="before")
    @classmethod
    def parse_timeout(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and v.strip().lower() in UNBOUNDED):
            return None
        v = str(v).strip()
        parse_duration(v)
        return v

    @field_validator("build_max_memory", "automation_max_memory", mode="before")
    @classmethod
    def parse_memory_ceiling(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and v.strip().lower() in UNBOUNDED):
            return None
        v = str(v).strip()
        parse_memory(v)
        return v

    @field_validator("build_max_cpu", "automation_max_cpu", mode="before")
    @classmethod
    def parse_cpu_ceiling(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and v.strip().lower() in UNBOUNDED):
            return None
        v = str(v).strip()
        parse_cpu(v)
        return v

    @field_validator("build_template_patterns", mode="before")
    @classmethod
    def split_patterns(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v


# Environment variable names (single source of truth)
ENV_VARS = {
    "build_max_timeout": "CHOREO_BUILD_MAX_TIMEOUT",
    "build_max_memory": "CHOREO_BUILD_MAX_MEMORY",
    "build_max_cpu": "CHOREO_BUILD_MAX_CPU",
    "automation_max_timeout": "CHOREO_AUTOMATION_MAX_TIMEOUT",
    "automation_max_memory": "CHOREO_AUTOMATION_MAX_MEMORY",
    "automation_max_cpu": "CHOREO_AUTOMATION_MAX_CPU",
    "build_template_patterns": "CHOREO_BUILD_TEMPLATE_PATTERNS",
    "image_name": "CHOREO_IMAGE_NAME",
    "default_image": "CHOREO_DEFAULT_IMAGE",
    "runner_url": "CHOREO_RUNNER_URL",
    "poll_interval": "CHOREO_POLL_INTERVAL",
}


def load_settings(environ: Mapping[str, str] | None = None) -> EngineSettings:
    """Load EngineSettings from CHOREO_* environment variables.

    Args:
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Parsed EngineSettings

    Raises:
        SettingsError: If a variable has an invalid value
    """
    if environ is None:
        environ = dict(os.environ)

    kwargs: dict[str, Any] = {}
    for field_name, env_var in ENV_VARS.items():
        value = environ.get(env_var)
        if value is not None:
            kwargs[field_name] = value

    try:
        return EngineSettings(**kwargs)
    except ValidationError as e:
        errors = "; ".join(
            f"{ENV_VARS.get(str(err['loc'][0]), err['loc'][0])}: {err['msg']}" for err in e.errors()
        )
        raise SettingsError(f"Invalid engine settings: {errors}") from e


def system_environment(
    pipeline_type: PipelineType,
    *,
    workspace: str,
    repository_dir: str = "",
    image_name: str = "",
) -> dict[str, str]:
    """Process-boundary variables every step receives.

    Build pipelines get REPOSITORY_DIR, WORKSPACE and IMAGE_NAME;
    Automation pipelines only get WORKSPACE.
    """
    if pipeline_type == PipelineType.BUILD:
        return {
            "REPOSITORY_DIR": repository_dir,
            "WORKSPACE": workspace,
            "IMAGE_NAME": image_name,
        }
    return {"WORKSPACE": workspace}
