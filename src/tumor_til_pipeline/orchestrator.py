from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import typer

from .errors import StageExecutionError, StageOutputMissingError
from .models import ContainerStage, RunState
from .runtime import ContainerRuntime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedStage:
    index: int
    stage: ContainerStage
    argv: list[str]


@dataclass
class StageResult:
    name: str
    argv: list[str]
    log_path: Path
    returncode: int
    duration_s: float
    status: str  # "success" | "failed" | "skipped_failure"


@dataclass
class OrchestratorStatus:
    """Mutable progress record, read back when writing the run manifest."""

    state: RunState = RunState.INPUTS_VALIDATED
    current_stage: Optional[int] = None
    failed_stage: Optional[int] = None
    failed_exit_code: Optional[int] = None
    results: list[StageResult] = field(default_factory=list)


class PipelineOrchestrator:
    """Run a fixed list of container stages one after another.

    - every invocation is built up front, so a path the runtime cannot
      express fails the run before anything starts
    - the first failing required stage stops the run; nothing is retried and
      outputs of finished stages are left in place for a later re-run
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        stages: list[ContainerStage],
        *,
        stage_timeout: Optional[float] = None,
        echo: Callable[..., None] = typer.echo,
    ) -> None:
        self.runtime = runtime
        self.stages = stages
        self.stage_timeout = stage_timeout
        self.echo = echo
        self.status = OrchestratorStatus()

    def plan(self) -> list[PlannedStage]:
        return [
            PlannedStage(index=i, stage=s, argv=self.runtime.build_invocation(s))
            for i, s in enumerate(self.stages)
        ]

    def run(self, planned: Optional[list[PlannedStage]] = None) -> list[StageResult]:
        if planned is None:
            planned = self.plan()
        env = self.runtime.environment()
        self.status.state = RunState.RUNNING

        for p in planned:
            self.status.current_stage = p.index
            try:
                self._run_one(p, env)
            except (StageExecutionError, StageOutputMissingError) as e:
                self.status.state = RunState.FAILED
                self.status.failed_stage = p.index
                self.status.failed_exit_code = e.exit_code
                raise

        self.status.current_stage = None
        self.status.state = RunState.DONE
        return self.status.results

    def _run_one(self, p: PlannedStage, env: dict[str, str]) -> None:
        stage = p.stage
        total = len(self.stages)
        self.echo(f"[{p.index + 1}/{total}] Running stage '{stage.name}'...")
        logger.debug("stage %s argv: %s", stage.name, p.argv)

        started = time.monotonic()
        returncode = self.runtime.ensure_image(stage)
        if returncode != 0:
            self.echo(f"Could not obtain image {stage.image.reference} for stage '{stage.name}'.", err=True)
        else:
            returncode = self.runtime.runner.stream(
                p.argv,
                log_path=stage.log_path,
                timeout=self.stage_timeout,
                env=env,
            )
        duration = time.monotonic() - started

        if returncode != 0:
            result = StageResult(
                name=stage.name,
                argv=p.argv,
                log_path=stage.log_path,
                returncode=returncode,
                duration_s=duration,
                status="failed" if stage.required else "skipped_failure",
            )
            self.status.results.append(result)
            if not stage.required:
                self.echo(
                    f"Warning: optional stage '{stage.name}' exited with {returncode}; continuing.",
                    err=True,
                )
                return
            raise StageExecutionError(
                stage_name=stage.name,
                stage_index=p.index,
                returncode=returncode,
                log_path=str(stage.log_path),
            )

        missing = [str(path) for path in stage.expected_outputs if not path.exists()]
        self.status.results.append(
            StageResult(
                name=stage.name,
                argv=p.argv,
                log_path=stage.log_path,
                returncode=0,
                duration_s=duration,
                status="failed" if missing and stage.required else "success",
            )
        )
        if missing and stage.required:
            raise StageOutputMissingError(stage_name=stage.name, stage_index=p.index, missing=missing)
        self.echo(f"Stage '{stage.name}' finished in {duration:.1f}s.")
