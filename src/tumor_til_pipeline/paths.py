from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import InputPathMissingError
from .models import PipelineVariant

TUMOR_RESULTS = "results-tumor"
TIL_RESULTS = "results-tils"
ALIGN_RESULTS = "results-tilalign"
MODEL_OUTPUTS = "model-outputs"
RUNTIME_LOG = "runtime.log"
ALIGNMENT_CSV = "output.csv"
MANIFEST = "pipeline_run.json"
SCRATCH = ".rmarkdown-tmp"

EXIT_PRIMARY_INPUT = 5
EXIT_SECONDARY_INPUT = 6
EXIT_REQUIRED_FILE = 7


def canonical(raw: Union[str, Path]) -> Path:
    """
    Absolute, symlink-free form of a user-supplied path.

    Every path that ends up in a container invocation goes through here, so
    relative paths and `~` never reach an argv.
    """
    return Path(raw).expanduser().resolve()


def runtime_log(directory: Path) -> Path:
    return directory / RUNTIME_LOG


def model_outputs(results_dir: Path) -> Path:
    return results_dir / MODEL_OUTPUTS


@dataclass(frozen=True)
class PathInputs:
    """User-supplied paths, canonicalized and checked for existence."""

    variant: PipelineVariant
    output_dir: Path
    slides_dir: Optional[Path] = None
    tumor_dir: Optional[Path] = None
    til_dir: Optional[Path] = None
    survival_csv: Optional[Path] = None

    @property
    def with_survival(self) -> bool:
        return self.survival_csv is not None

    @classmethod
    def validate(
        cls,
        variant: PipelineVariant,
        *,
        output_dir: Union[str, Path],
        slides_dir: Union[str, Path, None] = None,
        tumor_dir: Union[str, Path, None] = None,
        til_dir: Union[str, Path, None] = None,
        survival_csv: Union[str, Path, None] = None,
    ) -> "PathInputs":
        """
        Check inputs in a fixed order, failing on the first missing one.

        Exit codes: 5 slides/tumor directory, 6 TIL directory, 7 survival CSV.
        """
        slides = canonical(slides_dir) if slides_dir is not None else None
        tumor = canonical(tumor_dir) if tumor_dir is not None else None
        til = canonical(til_dir) if til_dir is not None else None
        csv = canonical(survival_csv) if survival_csv is not None else None

        if variant == PipelineVariant.DETECT_ALIGN_SURVIVE:
            if slides is None:
                raise ValueError("slides_dir is required for the detection pipeline")
            _require_dir(slides, role="slides", label="slides directory", exit_code=EXIT_PRIMARY_INPUT)
        else:
            if tumor is None or til is None:
                raise ValueError("tumor_dir and til_dir are required for alignment")
            _require_dir(tumor, role="tumor", label="tumor output directory", exit_code=EXIT_PRIMARY_INPUT)
            _require_dir(til, role="tils", label="TIL output directory", exit_code=EXIT_SECONDARY_INPUT)

        if variant == PipelineVariant.ALIGN_SURVIVE and csv is None:
            raise ValueError("survival_csv is required for align-and-survive")
        if csv is not None and not csv.is_file():
            raise InputPathMissingError(
                f"survival CSV not found: {csv}",
                role="survival_csv",
                path=str(csv),
                exit_code=EXIT_REQUIRED_FILE,
            )

        return cls(
            variant=variant,
            output_dir=canonical(output_dir),
            slides_dir=slides,
            tumor_dir=tumor,
            til_dir=til,
            survival_csv=csv,
        )


def _require_dir(path: Path, *, role: str, label: str, exit_code: int) -> None:
    if not path.is_dir():
        raise InputPathMissingError(f"{label} not found: {path}", role=role, path=str(path), exit_code=exit_code)


@dataclass(frozen=True)
class OutputLayout:
    """
    Directory tree a run writes into.

    Detection runs get one results directory per stage under `root`; the
    alignment-only variants write straight into `root`.
    """

    root: Path
    align_dir: Path
    tumor_dir: Optional[Path] = None
    til_dir: Optional[Path] = None
    survival: bool = False

    @classmethod
    def for_inputs(cls, inputs: PathInputs) -> "OutputLayout":
        root = inputs.output_dir
        if inputs.variant == PipelineVariant.DETECT_ALIGN_SURVIVE:
            return cls(
                root=root,
                align_dir=root / ALIGN_RESULTS,
                tumor_dir=root / TUMOR_RESULTS,
                til_dir=root / TIL_RESULTS,
                survival=inputs.with_survival,
            )
        return cls(root=root, align_dir=root, survival=inputs.with_survival)

    @property
    def scratch_dir(self) -> Path:
        return self.align_dir / SCRATCH

    @property
    def alignment_csv(self) -> Path:
        return self.align_dir / ALIGNMENT_CSV

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST

    def directories(self) -> list[Path]:
        dirs = [self.root]
        for d in (self.tumor_dir, self.til_dir, self.align_dir):
            if d is not None and d not in dirs:
                dirs.append(d)
        if self.survival:
            dirs.append(self.scratch_dir / "rmarkdowndir")
        return dirs

    def prepare(self) -> None:
        # Re-runs are expected: the containers skip outputs that already exist.
        for d in self.directories():
            d.mkdir(parents=True, exist_ok=True)
