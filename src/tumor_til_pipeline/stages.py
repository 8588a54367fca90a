from __future__ import annotations

from pathlib import Path
from typing import Optional

from .config import Settings
from .models import AccessMode, Binding, ContainerStage, PipelineVariant
from .paths import ALIGNMENT_CSV, OutputLayout, PathInputs, model_outputs, runtime_log

# Container-side paths used by the TIL-align image.
TUMOR_MOUNT = "/data/results-tumor"
TIL_MOUNT = "/data/results-tils"
ALIGN_MOUNT = "/data/results-tilalign"
SAMPLE_INFO_MOUNT = "/data/sample_info.csv"
SURVIVAL_DATA_MOUNT = "/data"
SURVIVAL_TMP_MOUNT = "/tmp"

# (model, weights) pairs published with WSInfer.
TUMOR_MODEL = ("resnet34", "TCGA-BRCA-v1")
TIL_MODEL = ("inception_v4nobn", "TCGA-TILs-v1")

# commandLineAlign.R positional parameters.
ALIGN_MODEL_TAG = "inceptionv4"
TIL_THRESHOLD = "0.1"
TUMOR_THRESHOLD = "0.5"

SURVIVAL_TIME_COLUMN = "survivalA"
CENSOR_COLUMN = "censorA.0yes.1no"
REPORT_FORMAT = "pdf_document"


def detection_stage(
    name: str,
    *,
    model: tuple[str, str],
    slides_dir: Path,
    results_dir: Path,
    settings: Settings,
) -> ContainerStage:
    model_name, weights = model
    bindings = [Binding(host=p, container=str(p), mode=AccessMode.READ_ONLY) for p in settings.extra_binds]
    bindings += [
        Binding(host=slides_dir, container=str(slides_dir), mode=AccessMode.READ_ONLY),
        Binding(host=results_dir, container=str(results_dir), mode=AccessMode.READ_WRITE),
    ]
    return ContainerStage(
        name=name,
        image=settings.wsinfer_image,
        args=[
            "run",
            "--wsi-dir", str(slides_dir),
            "--results-dir", str(results_dir),
            "--model", model_name,
            "--weights", weights,
            "--num-workers", str(settings.num_workers),
            "--batch-size", str(settings.batch_size),
        ],
        bindings=bindings,
        env={"TORCH_HOME": ""},
        gpu=True,
        log_path=runtime_log(results_dir),
        # WSInfer skips slides whose outputs already exist, so a re-run may
        # legitimately write nothing new; model-outputs must exist either way.
        expected_outputs=[model_outputs(results_dir)],
    )


def alignment_stage(
    *,
    tumor_predictions: Path,
    til_predictions: Path,
    align_dir: Path,
    settings: Settings,
    survival_csv: Optional[Path] = None,
) -> ContainerStage:
    bindings = [
        Binding(host=tumor_predictions, container=TUMOR_MOUNT, mode=AccessMode.READ_ONLY),
        Binding(host=til_predictions, container=TIL_MOUNT, mode=AccessMode.READ_ONLY),
        Binding(host=align_dir, container=ALIGN_MOUNT, mode=AccessMode.READ_WRITE),
    ]
    args = [
        "--vanilla",
        "/code/commandLineAlign.R",
        ALIGN_MODEL_TAG,
        TIL_MOUNT,
        TIL_THRESHOLD,
        TUMOR_MOUNT,
        TUMOR_THRESHOLD,
        "",
        ALIGNMENT_CSV,
        ALIGN_MOUNT,
        "true",
    ]
    if survival_csv is not None:
        bindings.append(Binding(host=survival_csv, container=SAMPLE_INFO_MOUNT, mode=AccessMode.READ_ONLY))
        args.append(SAMPLE_INFO_MOUNT)
    return ContainerStage(
        name="align",
        image=settings.tilalign_image,
        program="Rscript",
        args=args,
        bindings=bindings,
        contain=True,
        log_path=runtime_log(align_dir),
        expected_outputs=[align_dir / ALIGNMENT_CSV],
    )


def survival_stages(*, layout: OutputLayout, settings: Settings) -> list[ContainerStage]:
    """
    Render the survival report from the alignment CSV.

    `--contain` gives the container an empty /tmp, and the renderer needs a
    writable copy of its R Markdown template there. So a setup stage first
    copies the template into a per-run scratch directory mounted at /tmp.
    """
    scratch = Binding(host=layout.scratch_dir, container=SURVIVAL_TMP_MOUNT, mode=AccessMode.READ_WRITE)
    log = runtime_log(layout.align_dir)
    setup = ContainerStage(
        name="survival-setup",
        image=settings.tilalign_image,
        program="cp",
        args=["/code/Descriptive_Statistics.rmd", f"{SURVIVAL_TMP_MOUNT}/rmarkdowndir"],
        bindings=[scratch],
        contain=True,
        log_path=log,
        expected_outputs=[layout.scratch_dir / "rmarkdowndir" / "Descriptive_Statistics.rmd"],
    )
    render = ContainerStage(
        name="survival",
        image=settings.tilalign_image,
        program="Rscript",
        args=[
            "--vanilla",
            "/code/renderWrapper.R",
            f"{SURVIVAL_DATA_MOUNT}/{ALIGNMENT_CSV}",
            SURVIVAL_TIME_COLUMN,
            CENSOR_COLUMN,
            REPORT_FORMAT,
        ],
        bindings=[
            Binding(host=layout.align_dir, container=SURVIVAL_DATA_MOUNT, mode=AccessMode.READ_WRITE),
            scratch,
        ],
        contain=True,
        log_path=log,
    )
    return [setup, render]


def build_stages(inputs: PathInputs, layout: OutputLayout, settings: Settings) -> list[ContainerStage]:
    """Static stage list for a validated run, in execution order."""
    stages: list[ContainerStage] = []

    if inputs.variant == PipelineVariant.DETECT_ALIGN_SURVIVE:
        assert inputs.slides_dir is not None
        assert layout.tumor_dir is not None and layout.til_dir is not None
        stages.append(
            detection_stage(
                "detect-tumor",
                model=TUMOR_MODEL,
                slides_dir=inputs.slides_dir,
                results_dir=layout.tumor_dir,
                settings=settings,
            )
        )
        stages.append(
            detection_stage(
                "detect-tils",
                model=TIL_MODEL,
                slides_dir=inputs.slides_dir,
                results_dir=layout.til_dir,
                settings=settings,
            )
        )
        tumor_predictions = model_outputs(layout.tumor_dir)
        til_predictions = model_outputs(layout.til_dir)
    else:
        assert inputs.tumor_dir is not None and inputs.til_dir is not None
        tumor_predictions = inputs.tumor_dir
        til_predictions = inputs.til_dir

    stages.append(
        alignment_stage(
            tumor_predictions=tumor_predictions,
            til_predictions=til_predictions,
            align_dir=layout.align_dir,
            settings=settings,
            survival_csv=inputs.survival_csv,
        )
    )

    if inputs.with_survival:
        stages.extend(survival_stages(layout=layout, settings=settings))
    return stages
