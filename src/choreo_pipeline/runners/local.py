"""Local step runner for testing without a cluster.

Runs inline scripts and scripts as host subprocesses, containerSet
containers as sequential commands, and built-in templates through the
handler registry. Images are ignored: everything runs on the host.

Usage:
    runner = LocalRunner(workdir="./pipeline-run")
    engine = PipelineEngine(pipeline, runner, system_env=runner.system_env(PipelineType.AUTOMATION))

Working directory layout:
    <workdir>/workspace/     WORKSPACE, cwd of every step
    <workdir>/repository/    REPOSITORY_DIR (Build pipelines)
    <workdir>/steps/<step>/attempt-<n>/script
    <workdir>/logs/<step>-attempt-<n>.log
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
from datetime import UTC, datetime
from pathlib import Path

from choreo_pipeline.config import PipelineType, system_environment
from choreo_pipeline.errors import InfrastructureError
from choreo_pipeline.runners.base import StepOutcome, StepRequest
from choreo_pipeline.runners.builtins import BuiltinNotFoundError, get_builtin

logger = logging.getLogger(__name__)

DEFAULT_SHELL = ["/bin/sh"]


class LocalRunner:
    """Execute steps on the local host.

    Args:
        workdir: Working directory for the run (created if missing).
        shell: Interpreter used for inline scripts.
        inherit_env: Pass the host environment through to steps.
    """

    def __init__(
        self,
        workdir: str | Path | None = None,
        *,
        shell: list[str] | None = None,
        inherit_env: bool = True,
    ) -> None:
        if workdir:
            self.workdir = Path(workdir)
        else:
            timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
            self.workdir = Path(f"./pipeline-runs/run-{timestamp}")
        self.shell = shell or DEFAULT_SHELL
        self.inherit_env = inherit_env
        self._setup_workdir()

    def _setup_workdir(self) -> None:
        """Create working directory structure."""
        self.workdir.mkdir(parents=True, exist_ok=True)
        for sub in ("workspace", "repository", "steps", "logs"):
            (self.workdir / sub).mkdir(exist_ok=True)

    @property
    def workspace(self) -> Path:
        return self.workdir / "workspace"

    @property
    def repository_dir(self) -> Path:
        return self.workdir / "repository"

    def system_env(self, pipeline_type: PipelineType, *, image_name: str = "") -> dict[str, str]:
        """Process-boundary variables pointing into this runner's workdir."""
        return system_environment(
            pipeline_type,
            workspace=str(self.workspace.resolve()),
            repository_dir=str(self.repository_dir.resolve()),
            image_name=image_name,
        )

    async def run(self, request: StepRequest) -> StepOutcome:
        """Execute one step attempt.

        Raises:
            InfrastructureError: If the step cannot be started.
        """
        logger.info(f"Running step {request.step_name} (attempt {request.attempt}, {request.kind})")

        if request.kind == "builtin":
            return await self._run_builtin(request)

        step_dir = self.workdir / "steps" / request.step_name / f"attempt-{request.attempt}"
        step_dir.mkdir(parents=True, exist_ok=True)

        if request.kind == "containerSet":
            exit_code, logs = await self._run_containers(request)
        else:
            script_path = step_dir / "script"
            script_path.write_text(request.script or "", encoding="utf-8")
            argv = [*(request.command or self.shell), str(script_path)]
            exit_code, logs = await self._exec(argv, request.env)

        log_path = self.workdir / "logs" / f"{request.step_name}-attempt-{request.attempt}.log"
        log_path.write_text(logs, encoding="utf-8")

        outputs = self._read_outputs(request.outputs)
        return StepOutcome(exit_code=exit_code, outputs=outputs, logs=logs)

    async def _run_builtin(self, request: StepRequest) -> StepOutcome:
        try:
            handler = get_builtin(request.builtin or "")
        except BuiltinNotFoundError as e:
            raise InfrastructureError(str(e)) from e

        try:
            result = handler(request)
            if inspect.isawaitable(result):
                result = await result
        except InfrastructureError:
            raise
        except Exception as e:
            logger.exception(f"Built-in {request.builtin} raised exception: {e}")
            return StepOutcome(error=f"Built-in {request.builtin} raised {type(e).__name__}: {e}")
        return result

    async def _run_containers(self, request: StepRequest) -> tuple[int, str]:
        """Run each container's command in order, stopping at the first failure."""
        logs: list[str] = []
        for container in request.containers:
            argv = [*container.command, *container.args]
            if not argv:
                raise InfrastructureError(
                    f"Container '{container.name}' of step '{request.step_name}' has no command",
                )
            env = {**request.env, **{e.name: e.value for e in container.env}}
            exit_code, output = await self._exec(argv, env)
            logs.append(f"--- {container.name} ---\n{output}")
            if exit_code != 0:
                return exit_code, "".join(logs)
        return 0, "".join(logs)

    async def _exec(self, argv: list[str], env: dict[str, str]) -> tuple[int, str]:
        """Run a subprocess, killing it if the awaiting task is cancelled."""
        full_env = {**os.environ, **env} if self.inherit_env else dict(env)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.workspace),
                env=full_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise InfrastructureError(f"Failed to start {argv[0]}: {e}") from e

        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise

        return proc.returncode or 0, stdout.decode("utf-8", errors="replace")

    def _read_outputs(self, paths: dict[str, str]) -> dict[str, str]:
        """Read declared output files; relative paths are under the workspace."""
        values: dict[str, str] = {}
        for name, raw_path in paths.items():
            path = Path(raw_path)
            if not path.is_absolute():
                path = self.workspace / path
            if not path.is_file():
                logger.warning(f"Output '{name}' not found at {path}")
                continue
            try:
                data = path.read_bytes()
            except OSError as e:
                logger.warning(f"Output '{name}' could not be read from {path}: {e}")
                continue
            # Output parameters are text; undecodable bytes become U+FFFD.
            values[name] = data.decode("utf-8", errors="replace").rstrip("\n")
        return values
