from __future__ import annotations

import functools
from pathlib import Path

import pandas as pd
import pytest
from typer.testing import CliRunner

from tumor_til_pipeline import cli
from tumor_til_pipeline.config import Settings
from tumor_til_pipeline.pipeline.run import resolve_runtime, run_pipeline
from tumor_til_pipeline.utils import read_json

from conftest import SLIDE_IDS, FakeRunner, make_which

runner = CliRunner()


def _wire(monkeypatch, settings: Settings, fake: FakeRunner, *names: str) -> None:
    which = make_which(*names)
    monkeypatch.setattr(cli, "run_pipeline", functools.partial(run_pipeline, settings=settings, runner=fake, which=which))
    monkeypatch.setattr(
        cli, "resolve_runtime", functools.partial(resolve_runtime, settings=settings, runner=fake, which=which)
    )


@pytest.mark.parametrize(
    "args",
    [
        ["detect-align-and-survive"],
        ["detect-align-and-survive", "a"],
        ["detect-align-and-survive", "a", "b", "c"],
        ["align", "a", "b"],
        ["align-and-survive", "a", "b", "c"],
        ["align-and-survive", "a", "b", "c", "d", "e"],
    ],
)
def test_wrong_argument_count_exits_1(args: list[str], monkeypatch, settings: Settings) -> None:
    fake = FakeRunner()
    _wire(monkeypatch, settings, fake, "docker")
    result = runner.invoke(cli.app, args)
    assert result.exit_code == 1
    assert "usage:" in result.output
    assert fake.checks == []


def test_align_and_survive_usage_shows_sample_csv(monkeypatch, settings: Settings) -> None:
    _wire(monkeypatch, settings, FakeRunner(), "docker")
    result = runner.invoke(cli.app, ["align-and-survive"])
    assert result.exit_code == 1
    assert "slideID,survivalA,censorA.0yes.1no" in result.output


def test_no_runtime_exits_4_before_touching_paths(tmp_path: Path, monkeypatch, settings: Settings) -> None:
    _wire(monkeypatch, settings, FakeRunner())
    out = tmp_path / "out"
    result = runner.invoke(cli.app, ["align", str(tmp_path / "nope1"), str(tmp_path / "nope2"), str(out)])
    assert result.exit_code == 4
    assert not out.exists()


def test_unusable_docker_exits_3(tmp_path: Path, monkeypatch, settings: Settings) -> None:
    fake = FakeRunner(check_code=lambda argv: 1)
    _wire(monkeypatch, settings, fake, "docker")
    out = tmp_path / "out"
    result = runner.invoke(cli.app, ["align", str(tmp_path), str(tmp_path), str(out)])
    assert result.exit_code == 3
    assert fake.streams == []
    assert not out.exists()


def test_missing_slides_dir_exits_5_and_creates_nothing(tmp_path: Path, monkeypatch, settings: Settings) -> None:
    fake = FakeRunner()
    _wire(monkeypatch, settings, fake, "docker")
    out = tmp_path / "out"
    result = runner.invoke(cli.app, ["detect-align-and-survive", str(tmp_path / "missing"), str(out)])
    assert result.exit_code == 5
    assert not out.exists()
    assert fake.streams == []


def test_missing_tumor_dir_exits_5(tmp_path: Path, monkeypatch, settings: Settings, predictions) -> None:
    _, til = predictions
    _wire(monkeypatch, settings, FakeRunner(), "docker")
    result = runner.invoke(cli.app, ["align", str(tmp_path / "missing"), str(til), str(tmp_path / "out")])
    assert result.exit_code == 5


def test_missing_til_dir_exits_6(tmp_path: Path, monkeypatch, settings: Settings, predictions) -> None:
    tumor, _ = predictions
    _wire(monkeypatch, settings, FakeRunner(), "docker")
    out = tmp_path / "out"
    result = runner.invoke(cli.app, ["align", str(tumor), str(tmp_path / "missing"), str(out)])
    assert result.exit_code == 6
    assert not out.exists()


def test_missing_survival_csv_exits_7(tmp_path: Path, monkeypatch, settings: Settings, predictions) -> None:
    tumor, til = predictions
    _wire(monkeypatch, settings, FakeRunner(), "docker")
    out = tmp_path / "out"
    result = runner.invoke(
        cli.app, ["align-and-survive", str(tumor), str(til), str(tmp_path / "missing.csv"), str(out)]
    )
    assert result.exit_code == 7
    assert not out.exists()


def test_malformed_survival_csv_exits_7(tmp_path: Path, monkeypatch, settings: Settings, predictions) -> None:
    tumor, til = predictions
    bad = tmp_path / "bad.csv"
    bad.write_text("id,time\n1,2\n", encoding="utf-8")
    fake = FakeRunner()
    _wire(monkeypatch, settings, fake, "docker")
    result = runner.invoke(cli.app, ["align-and-survive", str(tumor), str(til), str(bad), str(tmp_path / "out")])
    assert result.exit_code == 7
    assert fake.streams == []


def test_full_detection_run_on_three_slides(
    tmp_path: Path, monkeypatch, settings: Settings, slides_dir: Path, survival_csv: Path
) -> None:
    fake = FakeRunner()
    _wire(monkeypatch, settings, fake, "singularity")
    out = tmp_path / "out"

    result = runner.invoke(
        cli.app,
        ["detect-align-and-survive", str(slides_dir), str(out), "--survival-csv", str(survival_csv)],
    )

    assert result.exit_code == 0, result.output
    assert "Done." in result.output
    df = pd.read_csv(out / "results-tilalign" / "output.csv", dtype={"slideID": str})
    assert sorted(df["slideID"]) == list(SLIDE_IDS)
    for name in ("results-tumor", "results-tils", "results-tilalign"):
        assert (out / name / "runtime.log").is_file()

    manifest = read_json(out / "pipeline_run.json")
    assert manifest["status"] == "success"
    assert manifest["runtime"]["kind"] == "apptainer"
    assert [s["name"] for s in manifest["stages"]] == [
        "detect-tumor",
        "detect-tils",
        "align",
        "survival-setup",
        "survival",
    ]
    assert manifest["alignment_rows"] == 3


def test_rerun_into_same_output_succeeds(tmp_path: Path, monkeypatch, settings: Settings, slides_dir: Path) -> None:
    fake = FakeRunner()
    _wire(monkeypatch, settings, fake, "docker")
    args = ["detect-align-and-survive", str(slides_dir), str(tmp_path / "out")]

    assert runner.invoke(cli.app, args).exit_code == 0
    assert runner.invoke(cli.app, args).exit_code == 0
    assert len(fake.stage_streams()) == 6


def test_align_and_survive_runs_survival_stages(
    tmp_path: Path, monkeypatch, settings: Settings, predictions, survival_csv: Path
) -> None:
    tumor, til = predictions
    fake = FakeRunner()
    _wire(monkeypatch, settings, fake, "docker")
    out = tmp_path / "analysis"

    result = runner.invoke(cli.app, ["align-and-survive", str(tumor), str(til), str(survival_csv), str(out)])

    assert result.exit_code == 0, result.output
    stages = fake.stage_streams()
    assert len(stages) == 3
    assert "/code/renderWrapper.R" in stages[-1]
    assert (out / "output.csv").is_file()


def test_failing_stage_exit_code_is_propagated(
    tmp_path: Path, monkeypatch, settings: Settings, predictions
) -> None:
    tumor, til = predictions
    fake = FakeRunner(stream_code=lambda argv: 42)
    _wire(monkeypatch, settings, fake, "docker")
    out = tmp_path / "out"

    result = runner.invoke(cli.app, ["align", str(tumor), str(til), str(out)])

    assert result.exit_code == 42
    assert "runtime.log" in result.output
    manifest = read_json(out / "pipeline_run.json")
    assert manifest["status"] == "error"
    assert manifest["state"] == "failed"
    assert manifest["failed_stage"] == 0


def test_unmatched_slides_warn_but_run(
    tmp_path: Path, monkeypatch, settings: Settings, predictions, survival_csv: Path
) -> None:
    tumor, til = predictions
    (tumor / "prediction-003").unlink()
    _wire(monkeypatch, settings, FakeRunner(), "docker")
    result = runner.invoke(
        cli.app, ["align-and-survive", str(tumor), str(til), str(survival_csv), str(tmp_path / "out")]
    )
    assert result.exit_code == 0, result.output
    assert "no tumor prediction file for slide(s): 003" in result.output


def test_check_runtime(monkeypatch, settings: Settings) -> None:
    _wire(monkeypatch, settings, FakeRunner(), "docker")
    result = runner.invoke(cli.app, ["check-runtime"])
    assert result.exit_code == 0
    assert "Container runner: docker (/usr/bin/docker)" in result.output


def test_check_runtime_without_runner_exits_4(monkeypatch, settings: Settings) -> None:
    _wire(monkeypatch, settings, FakeRunner())
    assert runner.invoke(cli.app, ["check-runtime"]).exit_code == 4


def test_no_command_prints_help_and_exits_1() -> None:
    result = runner.invoke(cli.app, [])
    assert result.exit_code == 1
    assert "detect-align-and-survive" in result.output
