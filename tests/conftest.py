"""Pytest fixtures for choreo-pipeline tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from choreo_pipeline.config import EngineSettings
from choreo_pipeline.runners.builtins import _BUILTIN_REGISTRY


@pytest.fixture
def settings() -> EngineSettings:
    """Engine settings with default ceilings."""
    return EngineSettings()


@pytest.fixture
def build_pipeline_yaml() -> str:
    """A Build pipeline with a built-in build step, a template and a parallel group."""
    return """
arguments:
  - name: LOG_LEVEL
    value: info
  - name: REGISTRY
    value: registry.example.com

volumeClaimTemplates:
  - metadata:
      name: cache
    spec:
      accessModes: [ReadWriteOnce]

steps:
  - name: build
    template: choreo/docker-build@v1
    arguments:
      - name: dockerfile
        value: Dockerfile
  - - name: unit-tests
      template: run-tests
    - name: lint
      inlineScript: make lint
      volumeMounts:
        - name: cache
          mountPath: /cache
  - name: publish
    template: publish
    when: "{{steps.build.outputs.parameters.image}} != ''"

templates:
  run-tests:
    inlineScript: make test
    env:
      - name: LOG_LEVEL
        value: debug
  publish:
    inlineScript: ./publish.sh {{inputs.parameters.tag}}
    inputs:
      parameters:
        - name: tag
          value: latest
"""


@pytest.fixture
def pipeline_file(tmp_path: Path, build_pipeline_yaml: str) -> Path:
    """Write the Build pipeline to a temporary file."""
    path = tmp_path / "pipeline.yaml"
    path.write_text(build_pipeline_yaml)
    return path


@pytest.fixture
def clean_builtins():
    """Snapshot and restore the built-in handler registry."""
    saved = dict(_BUILTIN_REGISTRY)
    _BUILTIN_REGISTRY.clear()
    yield
    _BUILTIN_REGISTRY.clear()
    _BUILTIN_REGISTRY.update(saved)
