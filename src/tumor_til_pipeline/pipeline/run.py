from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Union

import typer

from .. import __version__
from ..config import Settings
from ..errors import PipelineError
from ..models import PipelineVariant, RunState
from ..orchestrator import OrchestratorStatus, PipelineOrchestrator, StageResult
from ..paths import OutputLayout, PathInputs
from ..process import CommandRunner, SubprocessRunner
from ..runtime import ContainerRuntime, RuntimeResolver, Which
from ..stages import build_stages
from ..survival import load_survival_table, read_alignment_output, unmatched_slide_ids
from ..utils import now_iso, write_json
from .context import RunContext

logger = logging.getLogger(__name__)

PathArg = Union[str, Path, None]


@dataclass(frozen=True)
class RunResult:
    """Outcome of a successful run."""

    run_id: str
    state: RunState
    runtime: str
    layout: OutputLayout
    results: list[StageResult]
    manifest_path: Path
    alignment_rows: Optional[int] = None

    @property
    def alignment_csv(self) -> Path:
        return self.layout.alignment_csv


def resolve_runtime(
    *,
    settings: Optional[Settings] = None,
    runner: Optional[CommandRunner] = None,
    which: Optional[Which] = None,
    echo: Callable[..., None] = typer.echo,
) -> ContainerRuntime:
    settings = settings or Settings.from_env()
    runner = runner or SubprocessRunner(echo=echo)
    resolver = RuntimeResolver(settings=settings, runner=runner, which=which or shutil.which, echo=echo)
    return resolver.resolve()


def run_pipeline(
    variant: PipelineVariant,
    *,
    output_dir: Union[str, Path],
    slides_dir: PathArg = None,
    tumor_dir: PathArg = None,
    til_dir: PathArg = None,
    survival_csv: PathArg = None,
    settings: Optional[Settings] = None,
    runner: Optional[CommandRunner] = None,
    which: Optional[Which] = None,
    echo: Callable[..., None] = typer.echo,
) -> RunResult:
    """Resolve a runtime, validate inputs, prepare outputs and run every stage.

    Order matters: the runtime is resolved before any path is looked at, and
    no directory is created until every input has been validated.
    """
    settings = settings or Settings.from_env()
    runner = runner or SubprocessRunner(echo=echo)

    logger.debug("state: %s", RunState.INIT.value)
    runtime = resolve_runtime(settings=settings, runner=runner, which=which, echo=echo)
    logger.debug("state: %s", RunState.RUNTIME_RESOLVED.value)
    echo(f"Container runner: {runtime.name} ({runtime.executable})")

    echo("Checking whether the input paths exist...")
    inputs = PathInputs.validate(
        variant,
        output_dir=output_dir,
        slides_dir=slides_dir,
        tumor_dir=tumor_dir,
        til_dir=til_dir,
        survival_csv=survival_csv,
    )
    if inputs.survival_csv is not None:
        echo("Checking the survival CSV...")
        table = load_survival_table(inputs.survival_csv)
        echo(f"Survival CSV has {len(table)} slide(s).")
        # Detection outputs do not exist yet in the detection variant.
        for label, directory in (("tumor", inputs.tumor_dir), ("TIL", inputs.til_dir)):
            if directory is None:
                continue
            missing = unmatched_slide_ids(table, directory)
            if missing:
                echo(f"Warning: no {label} prediction file for slide(s): {', '.join(missing)}", err=True)
    logger.debug("state: %s", RunState.INPUTS_VALIDATED.value)

    layout = OutputLayout.for_inputs(inputs)
    orchestrator = PipelineOrchestrator(
        runtime,
        build_stages(inputs, layout, settings),
        stage_timeout=settings.stage_timeout,
        echo=echo,
    )
    # A path the runtime cannot mount fails here, before anything is created.
    planned = orchestrator.plan()

    layout.prepare()
    ctx = RunContext.create(inputs=inputs, layout=layout, runtime=runtime, settings=settings)
    logger.debug("run %s layout: %s", ctx.run_id, layout)

    started_at = now_iso()
    try:
        results = orchestrator.run(planned)
    except PipelineError as e:
        orchestrator.status.state = RunState.FAILED
        write_json(ctx.manifest_path, _manifest(ctx, orchestrator.status, started_at, error=e))
        raise

    alignment_rows: Optional[int] = None
    if layout.alignment_csv.is_file():
        alignment_rows = len(read_alignment_output(layout.alignment_csv))
        echo(f"Alignment output: {layout.alignment_csv} ({alignment_rows} row(s))")

    write_json(ctx.manifest_path, _manifest(ctx, orchestrator.status, started_at, alignment_rows=alignment_rows))
    echo(f"Wrote output to {layout.root}")
    return RunResult(
        run_id=ctx.run_id,
        state=orchestrator.status.state,
        runtime=runtime.name,
        layout=layout,
        results=results,
        manifest_path=ctx.manifest_path,
        alignment_rows=alignment_rows,
    )


def _manifest(
    ctx: RunContext,
    status: OrchestratorStatus,
    started_at: str,
    *,
    error: Optional[PipelineError] = None,
    alignment_rows: Optional[int] = None,
) -> dict[str, Any]:
    inputs = ctx.inputs
    return {
        "run_id": ctx.run_id,
        "version": __version__,
        "variant": inputs.variant.value,
        "runtime": {"kind": ctx.runtime.name, "executable": ctx.runtime.executable},
        "started_at": started_at,
        "finished_at": now_iso(),
        "inputs": {
            "slides_dir": inputs.slides_dir,
            "tumor_dir": inputs.tumor_dir,
            "til_dir": inputs.til_dir,
            "survival_csv": inputs.survival_csv,
            "output_dir": inputs.output_dir,
        },
        "settings": ctx.settings.model_dump(mode="json"),
        "stages": [
            {
                "name": r.name,
                "status": r.status,
                "returncode": r.returncode,
                "duration_s": round(r.duration_s, 3),
                "log": r.log_path,
                "argv": r.argv,
            }
            for r in status.results
        ],
        "state": status.state.value,
        "failed_stage": status.failed_stage,
        "alignment_rows": alignment_rows,
        "status": "error" if error is not None else "success",
        "errors": [str(error)] if error is not None else [],
    }
