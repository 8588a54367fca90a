from __future__ import annotations

import csv
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

import pytest

from tumor_til_pipeline.config import Settings
from tumor_til_pipeline.process import CommandRunner

SLIDE_IDS = ("001", "002", "003")


class FakeRunner(CommandRunner):
    """Records every command and plays the part of the containers.

    `check_code` / `stream_code` decide exit statuses from the argv. With
    `simulate=True`, a successful streamed stage also writes the files the
    real image would write, based on the host side of its mounts.
    """

    def __init__(
        self,
        *,
        check_code: Callable[[list[str]], int] = lambda argv: 0,
        stream_code: Callable[[list[str]], int] = lambda argv: 0,
        simulate: bool = True,
    ) -> None:
        self.check_code = check_code
        self.stream_code = stream_code
        self.simulate = simulate
        self.checks: list[list[str]] = []
        self.streams: list[list[str]] = []
        self.envs: list[Optional[dict[str, str]]] = []

    def check(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        self.checks.append(list(argv))
        return self.check_code(list(argv))

    def stream(
        self,
        argv: Sequence[str],
        *,
        log_path: Path,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        argv = list(argv)
        self.streams.append(argv)
        self.envs.append(dict(env) if env is not None else None)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as fh:
            fh.write(" ".join(argv) + "\n")
        code = self.stream_code(argv)
        if code == 0 and self.simulate:
            _simulate(argv)
        return code

    def stage_streams(self) -> list[list[str]]:
        """Streamed commands minus image pulls."""
        return [a for a in self.streams if a[1] != "pull"]


def host_for(argv: list[str], container: str) -> Optional[Path]:
    """Host path mounted at `container`, for either runtime's mount syntax."""
    for flag, value in zip(argv, argv[1:]):
        if flag == "--bind":
            host, target, _mode = value.rsplit(":", 2)
            if target == container:
                return Path(host)
        elif flag == "--mount":
            fields = next(csv.reader([value]))
            opts = dict(f.split("=", 1) for f in fields if "=" in f)
            if opts.get("destination") == container:
                return Path(opts["source"])
    return None


def _simulate(argv: list[str]) -> None:
    if argv[1] == "pull":
        Path(argv[2]).touch()
    elif "--results-dir" in argv:
        slides = Path(argv[argv.index("--wsi-dir") + 1])
        out = Path(argv[argv.index("--results-dir") + 1]) / "model-outputs"
        out.mkdir(parents=True, exist_ok=True)
        for slide in sorted(slides.iterdir()):
            (out / f"prediction-{slide.stem}").write_text("x,y,p\n", encoding="utf-8")
    elif "/code/commandLineAlign.R" in argv:
        tumor = host_for(argv, "/data/results-tumor")
        align = host_for(argv, "/data/results-tilalign")
        assert tumor is not None and align is not None
        ids = sorted(p.name[len("prediction-"):] for p in tumor.iterdir() if p.name.startswith("prediction-"))
        lines = ["slideID,til_percentage"] + [f"{sid},0.{i}" for i, sid in enumerate(ids, start=1)]
        (align / "output.csv").write_text("\n".join(lines) + "\n", encoding="utf-8")
    elif "/code/Descriptive_Statistics.rmd" in argv:
        scratch = host_for(argv, "/tmp")
        assert scratch is not None
        (scratch / "rmarkdowndir" / "Descriptive_Statistics.rmd").write_text("---\n", encoding="utf-8")


def make_which(*names: str) -> Callable[[str], Optional[str]]:
    found = set(names)
    return lambda name: f"/usr/bin/{name}" if name in found else None


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(images_dir=tmp_path / "images")


@pytest.fixture
def slides_dir(tmp_path: Path) -> Path:
    d = tmp_path / "slides"
    d.mkdir()
    for sid in SLIDE_IDS:
        (d / f"{sid}.svs").write_bytes(b"")
    return d


@pytest.fixture
def predictions(tmp_path: Path) -> tuple[Path, Path]:
    """Pre-existing tumor and TIL prediction directories for SLIDE_IDS."""
    tumor = tmp_path / "tumor"
    til = tmp_path / "til"
    for d in (tumor, til):
        d.mkdir()
        for sid in SLIDE_IDS:
            (d / f"prediction-{sid}").write_text("x,y,p\n", encoding="utf-8")
    return tumor, til


@pytest.fixture
def survival_csv(tmp_path: Path) -> Path:
    p = tmp_path / "survival.csv"
    p.write_text("slideID,survivalA,censorA.0yes.1no\n001,1448,0\n002,1474,0\n003,4005,1\n", encoding="utf-8")
    return p
