"""Tests for engine settings and the process-boundary environment."""

from __future__ import annotations

import pytest

from choreo_pipeline.config import ENV_VARS, EngineSettings, PipelineType, load_settings, system_environment
from choreo_pipeline.errors import SettingsError


class TestLoadSettings:
    """Tests for load_settings."""

    def test_defaults(self):
        settings = load_settings({})

        assert settings == EngineSettings()
        assert settings.build_max_timeout == "1h"
        assert settings.build_max_memory == "4Gi"
        assert settings.build_max_cpu == "2"
        assert settings.automation_max_timeout is None
        assert settings.build_template_patterns == ["choreo/*build*@*"]
        assert settings.poll_interval == 2.0

    def test_from_environment(self):
        settings = load_settings(
            {
                "CHOREO_BUILD_MAX_TIMEOUT": "2h",
                "CHOREO_BUILD_MAX_MEMORY": "8Gi",
                "CHOREO_AUTOMATION_MAX_CPU": "4",
                "CHOREO_BUILD_TEMPLATE_PATTERNS": "choreo/*build*@*, choreo/kaniko@*,",
                "CHOREO_IMAGE_NAME": "registry.example.com/app:1",
                "CHOREO_POLL_INTERVAL": "0.5",
                "UNRELATED": "ignored",
            }
        )

        assert settings.build_max_timeout == "2h"
        assert settings.build_max_memory == "8Gi"
        assert settings.automation_max_cpu == "4"
        assert settings.build_template_patterns == ["choreo/*build*@*", "choreo/kaniko@*"]
        assert settings.image_name == "registry.example.com/app:1"
        assert settings.poll_interval == 0.5

    @pytest.mark.parametrize("value", ["unbounded", "none", "", "  Unbounded "])
    def test_unbounded_ceiling(self, value):
        settings = load_settings({"CHOREO_BUILD_MAX_MEMORY": value})
        assert settings.build_max_memory is None

    def test_reads_os_environ_by_default(self, monkeypatch):
        monkeypatch.setenv("CHOREO_DEFAULT_IMAGE", "busybox:1.36")
        assert load_settings().default_image == "busybox:1.36"

    @pytest.mark.parametrize(
        ("env_var", "value"),
        [
            ("CHOREO_BUILD_MAX_MEMORY", "lots"),
            ("CHOREO_BUILD_MAX_CPU", "1.5"),
            ("CHOREO_BUILD_MAX_TIMEOUT", "forever"),
            ("CHOREO_POLL_INTERVAL", "0"),
        ],
    )
    def test_invalid_values(self, env_var, value):
        with pytest.raises(SettingsError) as exc_info:
            load_settings({env_var: value})
        assert env_var in str(exc_info.value)

    def test_every_setting_has_an_env_var(self):
        assert set(ENV_VARS) == set(EngineSettings.model_fields)


class TestSystemEnvironment:
    """Tests for system_environment."""

    def test_build_pipeline(self):
        env = system_environment(
            PipelineType.BUILD,
            workspace="/workspace",
            repository_dir="/workspace/repository",
            image_name="app:1",
        )
        assert env == {
            "REPOSITORY_DIR": "/workspace/repository",
            "WORKSPACE": "/workspace",
            "IMAGE_NAME": "app:1",
        }

    def test_automation_pipeline(self):
        env = system_environment(PipelineType.AUTOMATION, workspace="/workspace", repository_dir="/repo")
        assert env == {"WORKSPACE": "/workspace"}
