from __future__ import annotations

from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RuntimeKind(str, Enum):
    """
    Container runtimes the pipeline can drive, in preference order.

    - APPTAINER: Apptainer/Singularity; needs no daemon or elevated privilege
    - DOCKER: fallback; presence on PATH does not imply permission to use it
    """
    APPTAINER = "apptainer"
    DOCKER = "docker"


class AccessMode(str, Enum):
    READ_ONLY = "ro"
    READ_WRITE = "rw"


class PipelineVariant(str, Enum):
    DETECT_ALIGN_SURVIVE = "detect-align-and-survive"
    ALIGN = "align"
    ALIGN_SURVIVE = "align-and-survive"


class RunState(str, Enum):
    INIT = "init"
    RUNTIME_RESOLVED = "runtime_resolved"
    INPUTS_VALIDATED = "inputs_validated"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class Binding(BaseModel):
    """
    One host-path-to-container-path mount.

    host: canonical absolute path on the host
    container: absolute POSIX path inside the container
    mode: ro | rw
    """
    model_config = ConfigDict(frozen=True)

    host: Path
    container: str
    mode: AccessMode = AccessMode.READ_ONLY

    @field_validator("host")
    @classmethod
    def _host_is_absolute(cls, v: Path) -> Path:
        if not v.is_absolute():
            raise ValueError(f"binding host path must be absolute: {v}")
        return v

    @field_validator("container")
    @classmethod
    def _container_is_absolute(cls, v: str) -> str:
        if not PurePosixPath(v).is_absolute():
            raise ValueError(f"binding container path must be absolute: {v}")
        return v

    @property
    def read_only(self) -> bool:
        return self.mode == AccessMode.READ_ONLY


class ImageSpec(BaseModel):
    """A container image published on a registry (e.g. kaczmarj/wsinfer:0.3.5)."""
    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

    @property
    def docker_uri(self) -> str:
        return f"docker://{self.reference}"

    @property
    def sif_name(self) -> str:
        # wsinfer_0.3.5.sif, the name `singularity pull docker://...` writes by default.
        name = self.repository.rsplit("/", 1)[-1]
        return f"{name}_{self.tag}.sif"


class ContainerStage(BaseModel):
    """
    A single containerized pipeline step.

    program: executable inside the image; None runs the image's own entrypoint
    args: argument vector passed after the image (or program)
    log_path: append-only log receiving the stage's combined output
    expected_outputs: host paths that must exist after a successful run
    required: a failing non-required stage is reported but does not stop the run
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: ImageSpec
    program: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    bindings: list[Binding] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    gpu: bool = False
    contain: bool = False
    log_path: Path
    expected_outputs: list[Path] = Field(default_factory=list)
    required: bool = True
