from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer
from pydantic import ValidationError

from . import __version__
from .errors import ArgumentCountError, PipelineError
from .models import PipelineVariant
from .pipeline.run import resolve_runtime, run_pipeline
from .survival import SAMPLE_CSV

app = typer.Typer(add_completion=False, help="Tumor/TIL whole-slide-image analysis pipeline (container orchestration)")

PROG = "tumor-til-pipeline"

DETECT_USAGE = f"usage: {PROG} detect-align-and-survive SLIDES_DIR OUTPUT_DIR [--survival-csv SURVIVAL_CSV]"
ALIGN_USAGE = f"usage: {PROG} align TUMOR_OUTPUT_DIR TIL_OUTPUT_DIR ANALYSIS_OUTPUT_DIR"
SURVIVE_USAGE = f"""usage: {PROG} align-and-survive TUMOR_OUTPUT_DIR TIL_OUTPUT_DIR SURVIVAL_CSV ANALYSIS_OUTPUT_DIR

Learn survival models based on spatial characteristics of tumor and tumor-infiltrating
lymphocytes (TILs). This depends on pre-existing tumor and TIL segmentations, as well
as a CSV with survival information.

The tumor and TIL segmentation outputs are files with the name 'prediction-SLIDE_ID',
where SLIDE_ID is a unique ID for the slide. The rows in the survival CSV must have the
same IDs. Each row should contain the information for one slide.

Survival CSV sample:

{SAMPLE_CSV}"""

_WORDS = {2: "two", 3: "three", 4: "four"}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print debug diagnostics."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=1)


@app.command("detect-align-and-survive")
def detect_align_and_survive(
    paths: Optional[list[str]] = typer.Argument(
        None, metavar="SLIDES_DIR OUTPUT_DIR", help="Directory of slides and directory for outputs.", show_default=False
    ),
    survival_csv: Optional[Path] = typer.Option(
        None, "--survival-csv", help="Per-slide survival CSV; enables the survival stage."
    ),
):
    """
    Run tumor and TIL detection on a directory of whole slide images, then TIL
    alignment and (with --survival-csv) survival modeling.

    The slides directory must only contain slides. Outputs are written to
    OUTPUT_DIR/results-tumor, results-tils and results-tilalign.
    """
    slides_dir, output_dir = _expect_args(paths, 2, DETECT_USAGE)
    _banner()
    if not os.environ.get("CUDA_VISIBLE_DEVICES"):
        typer.echo(
            "Warning: CUDA_VISIBLE_DEVICES environment variable is empty. We cannot use a GPU without this.\n"
            "         Please set CUDA_VISIBLE_DEVICES to use a GPU.\n",
            err=True,
        )
    _execute(
        PipelineVariant.DETECT_ALIGN_SURVIVE,
        slides_dir=slides_dir,
        output_dir=output_dir,
        survival_csv=survival_csv,
    )


@app.command("align")
def align(
    paths: Optional[list[str]] = typer.Argument(
        None,
        metavar="TUMOR_OUTPUT_DIR TIL_OUTPUT_DIR ANALYSIS_OUTPUT_DIR",
        help="Existing tumor and TIL prediction directories, and the output directory.",
        show_default=False,
    ),
):
    """
    Run TIL alignment on pre-existing tumor and TIL detections.
    """
    tumor_dir, til_dir, output_dir = _expect_args(paths, 3, ALIGN_USAGE)
    _banner()
    _execute(PipelineVariant.ALIGN, tumor_dir=tumor_dir, til_dir=til_dir, output_dir=output_dir)


@app.command("align-and-survive")
def align_and_survive(
    paths: Optional[list[str]] = typer.Argument(
        None,
        metavar="TUMOR_OUTPUT_DIR TIL_OUTPUT_DIR SURVIVAL_CSV ANALYSIS_OUTPUT_DIR",
        help="Existing tumor and TIL prediction directories, survival CSV and output directory.",
        show_default=False,
    ),
):
    """
    Run TIL alignment and survival modeling on pre-existing detections.

    The survival CSV needs the columns slideID, survivalA and censorA.0yes.1no.
    """
    tumor_dir, til_dir, survival_csv, output_dir = _expect_args(paths, 4, SURVIVE_USAGE)
    _banner()
    _execute(
        PipelineVariant.ALIGN_SURVIVE,
        tumor_dir=tumor_dir,
        til_dir=til_dir,
        survival_csv=survival_csv,
        output_dir=output_dir,
    )


@app.command("check-runtime")
def check_runtime():
    """
    Find and verify a container runner without running anything else.
    """
    try:
        runtime = resolve_runtime()
    except PipelineError as e:
        _fail(e)
    except ValidationError as e:
        _invalid_settings(e)
    typer.echo(f"Container runner: {runtime.name} ({runtime.executable})")


def _expect_args(paths: Optional[list[str]], n: int, usage: str) -> list[str]:
    got = list(paths or [])
    if len(got) != n:
        _fail(ArgumentCountError(f"script requires {_WORDS.get(n, n)} arguments", hint=usage))
    return got


def _banner() -> None:
    typer.echo("+ ---------------------------------------------------------- +")
    typer.echo("|           Federated Tumor/TIL Analysis Pipeline            |")
    typer.echo(f"|{('Version ' + __version__).center(60)}|")
    typer.echo("+ ---------------------------------------------------------- +")
    typer.echo(f"Timestamp: {datetime.now().astimezone().isoformat(timespec='seconds')}")
    typer.echo("")


def _execute(variant: PipelineVariant, **paths: Any) -> None:
    try:
        run_pipeline(variant, **paths)
    except PipelineError as e:
        _fail(e)
    except ValidationError as e:
        _invalid_settings(e)
    typer.echo("Done.")


def _fail(e: PipelineError) -> NoReturn:
    typer.echo(f"Error: {e.message}", err=True)
    if e.hint:
        typer.echo(e.hint, err=True)
    raise typer.Exit(code=e.exit_code)


def _invalid_settings(e: ValidationError) -> NoReturn:
    # Raised by Settings.from_env for malformed WSINFER_* / TUMOR_TIL_* values.
    typer.echo(f"Error: invalid environment configuration:\n{e}", err=True)
    raise typer.Exit(code=7)
