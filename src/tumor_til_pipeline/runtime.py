"""Container runtime selection and invocation syntax.

Apptainer/Singularity is preferred: when it is installed it normally works
without any extra privilege. Docker is the fallback. Both are probed before
use, so a broken primary never silently wins.
"""

from __future__ import annotations

import contextlib
import csv
import io
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Iterator, Optional

from .config import Settings
from .errors import (
    NoRuntimeFoundError,
    PrimaryUnusableError,
    SecondaryUnusableError,
    UnsupportedPathError,
)
from .models import Binding, ContainerStage, RuntimeKind
from .process import CommandRunner

logger = logging.getLogger(__name__)

APPTAINER_EXECUTABLES = ("singularity", "apptainer")
DOCKER_EXECUTABLE = "docker"

Which = Callable[[str], Optional[str]]


class ContainerRuntime:
    """Base class: one concrete container program plus its argv conventions."""

    kind: RuntimeKind

    def __init__(self, executable: str, *, runner: CommandRunner, settings: Settings) -> None:
        self.executable = executable
        self.runner = runner
        self.settings = settings

    @property
    def name(self) -> str:
        return self.kind.value

    def probe(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def build_invocation(self, stage: ContainerStage) -> list[str]:  # pragma: no cover - interface
        raise NotImplementedError

    def ensure_image(self, stage: ContainerStage) -> int:
        """Make the stage's image available locally. Returns an exit status."""
        return 0

    def environment(self) -> dict[str, str]:
        return dict(os.environ)


class ApptainerRuntime(ContainerRuntime):
    kind = RuntimeKind.APPTAINER

    def image_path(self, stage: ContainerStage) -> Path:
        return self.settings.images_dir / stage.image.sif_name

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.settings.apptainer_environment())
        return env

    def probe(self) -> bool:
        """Pull a tiny image and run `true` in it. The pulled file is always removed."""
        env = self.environment()
        cache = self.settings.cache_dir
        if cache is not None:
            try:
                cache.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.debug("cannot create cache directory %s: %s", cache, e)
                return False
        with _scratch_file(suffix=".sif") as img:
            pulled = self.runner.check(
                [self.executable, "pull", "--force", str(img), self.settings.probe_image],
                timeout=self.settings.probe_timeout,
                env=env,
            )
            if pulled != 0:
                logger.debug("%s pull exited %s", self.executable, pulled)
                return False
            ran = self.runner.check(
                [self.executable, "run", str(img), "true"],
                timeout=self.settings.probe_timeout,
                env=env,
            )
            logger.debug("%s run exited %s", self.executable, ran)
            return ran == 0

    def ensure_image(self, stage: ContainerStage) -> int:
        path = self.image_path(stage)
        if path.is_file():
            return 0
        path.parent.mkdir(parents=True, exist_ok=True)
        return self.runner.stream(
            [self.executable, "pull", str(path), stage.image.docker_uri],
            log_path=stage.log_path,
            env=self.environment(),
        )

    def build_invocation(self, stage: ContainerStage) -> list[str]:
        argv = [self.executable, "exec" if stage.program else "run"]
        if stage.gpu:
            argv.append("--nv")
        if stage.contain:
            argv.append("--contain")
        for key, value in stage.env.items():
            argv.extend(["--env", f"{key}={value}"])
        for b in stage.bindings:
            argv.extend(["--bind", _apptainer_bind(b)])
        argv.append(str(self.image_path(stage)))
        if stage.program:
            argv.append(stage.program)
        argv.extend(stage.args)
        return argv


class DockerRuntime(ContainerRuntime):
    kind = RuntimeKind.DOCKER

    def probe(self) -> bool:
        # Fails without daemon access (e.g. user not in the docker group).
        return self.runner.check([self.executable, "images"], timeout=self.settings.probe_timeout) == 0

    def build_invocation(self, stage: ContainerStage) -> list[str]:
        argv = [self.executable, "run", "--rm"]
        user = _host_user()
        if user:
            argv.append(f"--user={user}")
        if stage.gpu and self.settings.cuda_visible_devices:
            argv.extend(["--gpus", f'"device={self.settings.cuda_visible_devices}"'])
        for key, value in stage.env.items():
            argv.extend(["--env", f"{key}={value}"])
        for b in stage.bindings:
            argv.extend(["--mount", _docker_mount(b)])
        if stage.program:
            argv.extend(["--entrypoint", stage.program])
        argv.append(stage.image.reference)
        argv.extend(stage.args)
        return argv


class RuntimeResolver:
    """Pick exactly one usable runtime, or raise with a remediation hint."""

    def __init__(
        self,
        *,
        settings: Settings,
        runner: CommandRunner,
        which: Which = shutil.which,
        echo: Callable[[str], None] = lambda _msg: None,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.which = which
        self.echo = echo

    def find_apptainer(self) -> Optional[str]:
        for exe in APPTAINER_EXECUTABLES:
            path = self.which(exe)
            if path:
                return path
        return None

    def resolve(self) -> ContainerRuntime:
        self.echo("Searching for a container runner...")
        primary_exe = self.find_apptainer()
        if primary_exe:
            self.echo(f"Found Apptainer/Singularity ({primary_exe}). Checking that it can pull and run images...")
            primary = ApptainerRuntime(primary_exe, runner=self.runner, settings=self.settings)
            if primary.probe():
                self.echo("We can use Apptainer/Singularity!")
                return primary
            self.echo("Apptainer/Singularity was found but could not pull and/or run images. Trying Docker next...")
        else:
            self.echo("Could not find Apptainer/Singularity...")

        docker_exe = self.which(DOCKER_EXECUTABLE)
        if docker_exe:
            self.echo("Found Docker! Checking whether we have permission to use Docker...")
            docker = DockerRuntime(docker_exe, runner=self.runner, settings=self.settings)
            if docker.probe():
                self.echo("We can use Docker!")
                return docker
            raise SecondaryUnusableError(
                "found 'docker' but cannot use it",
                executable=docker_exe,
                hint="Ensure the Docker daemon is running and that you have permission to use 'docker' "
                "(e.g. membership in the 'docker' group).",
            )

        if primary_exe:
            raise PrimaryUnusableError(
                "found Apptainer/Singularity but cannot pull and/or run images, and Docker is not installed",
                executable=primary_exe,
                hint="Check network access to the registry and free space in the cache directory; "
                "set SINGULARITY_CACHEDIR and SINGULARITY_TMPDIR to a location with enough space.",
            )
        raise NoRuntimeFoundError(
            "no container runner found; tried 'singularity', 'apptainer' and 'docker'",
            hint="Install Docker or Apptainer/Singularity.",
        )


@contextlib.contextmanager
def _scratch_file(*, suffix: str) -> Iterator[Path]:
    fd, name = tempfile.mkstemp(suffix=suffix)
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


def _apptainer_bind(b: Binding) -> str:
    # --bind has no escaping: ':' separates fields and ',' separates binds.
    for p in (str(b.host), b.container):
        if ":" in p or "," in p:
            raise UnsupportedPathError(
                f"path cannot be bind-mounted by Apptainer/Singularity: {p}",
                hint="Rename or symlink the directory to a path without ':' or ','.",
            )
    return f"{b.host}:{b.container}:{b.mode.value}"


def _docker_mount(b: Binding) -> str:
    fields = ["type=bind", f"source={b.host}", f"destination={b.container}"]
    if b.read_only:
        fields.append("readonly")
    # Docker parses --mount as a CSV record, so quote fields the same way.
    buf = io.StringIO()
    csv.writer(buf).writerow(fields)
    return buf.getvalue().rstrip("\r\n")


def _host_user() -> Optional[str]:
    if not hasattr(os, "getuid"):
        return None
    return f"{os.getuid()}:{os.getgid()}"
