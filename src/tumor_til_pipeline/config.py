from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .models import ImageSpec

WSINFER_REPOSITORY = "kaczmarj/wsinfer"
TILALIGN_REPOSITORY = "kaczmarj/tilalign"
PROBE_IMAGE = "docker://alpine:3.12"

SHM_DIR = Path("/dev/shm")
DEFAULT_SHM_CACHE = SHM_DIR / "tumor-til-survival-analysis"


class Settings(BaseModel):
    """
    Run configuration.

    Built once from the environment, then passed explicitly to the runtime
    and stage builders.
    """
    wsinfer_version: str = "0.3.5"
    tilalign_version: str = "0.1.0"
    num_workers: int = Field(default=8, ge=1)
    batch_size: int = Field(default=8, ge=1)
    cache_dir: Optional[Path] = None
    tmp_dir: Optional[Path] = None
    images_dir: Path = Field(default_factory=Path.cwd)
    extra_binds: list[Path] = Field(default_factory=list)
    probe_image: str = PROBE_IMAGE
    probe_timeout: float = Field(default=300.0, gt=0)
    stage_timeout: Optional[float] = None
    cuda_visible_devices: Optional[str] = None

    @field_validator("stage_timeout")
    @classmethod
    def _positive_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("stage timeout must be positive")
        return v

    @property
    def wsinfer_image(self) -> ImageSpec:
        return ImageSpec(repository=WSINFER_REPOSITORY, tag=self.wsinfer_version)

    @property
    def tilalign_image(self) -> ImageSpec:
        return ImageSpec(repository=TILALIGN_REPOSITORY, tag=self.tilalign_version)

    def apptainer_environment(self) -> dict[str, str]:
        """Cache/temp overrides handed to every Apptainer invocation."""
        env: dict[str, str] = {}
        if self.cache_dir is not None:
            env["SINGULARITY_CACHEDIR"] = str(self.cache_dir)
            env["APPTAINER_CACHEDIR"] = str(self.cache_dir)
        if self.tmp_dir is not None:
            env["SINGULARITY_TMPDIR"] = str(self.tmp_dir)
            env["APPTAINER_TMPDIR"] = str(self.tmp_dir)
        return env

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        for key, field in (
            ("WSINFER_VERSION", "wsinfer_version"),
            ("TILALIGN_VERSION", "tilalign_version"),
            ("WSINFER_NUM_WORKERS", "num_workers"),
            ("WSINFER_BATCH_SIZE", "batch_size"),
            ("TUMOR_TIL_PROBE_TIMEOUT", "probe_timeout"),
            ("TUMOR_TIL_STAGE_TIMEOUT", "stage_timeout"),
            ("TUMOR_TIL_IMAGES_DIR", "images_dir"),
        ):
            raw = env.get(key, "").strip()
            if raw:
                values[field] = raw

        cache = _first_set(env, "SINGULARITY_CACHEDIR", "APPTAINER_CACHEDIR")
        if cache is None and _shm_writable():
            cache = str(DEFAULT_SHM_CACHE)
        if cache is not None:
            values["cache_dir"] = cache

        tmp = _first_set(env, "SINGULARITY_TMPDIR", "APPTAINER_TMPDIR")
        values["tmp_dir"] = tmp if tmp is not None else cache

        binds = env.get("TUMOR_TIL_EXTRA_BINDS", "")
        values["extra_binds"] = [p for p in binds.split(os.pathsep) if p.strip()]

        cuda = env.get("CUDA_VISIBLE_DEVICES", "").strip()
        values["cuda_visible_devices"] = cuda or None

        settings = cls.model_validate(values)
        settings.images_dir = settings.images_dir.expanduser().resolve()
        settings.extra_binds = [p.expanduser().resolve() for p in settings.extra_binds]
        return settings


def _first_set(env: Mapping[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        v = env.get(key, "").strip()
        if v:
            return v
    return None


def _shm_writable() -> bool:
    return SHM_DIR.is_dir() and os.access(SHM_DIR, os.W_OK)
