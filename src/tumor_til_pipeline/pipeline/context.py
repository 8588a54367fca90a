from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path

from ..config import Settings
from ..paths import OutputLayout, PathInputs
from ..runtime import ContainerRuntime


@dataclass(frozen=True)
class RunContext:
    """Everything a run needs once the runtime is resolved and inputs are validated."""

    run_id: str
    inputs: PathInputs
    layout: OutputLayout
    runtime: ContainerRuntime
    settings: Settings

    @classmethod
    def create(
        cls,
        *,
        inputs: PathInputs,
        layout: OutputLayout,
        runtime: ContainerRuntime,
        settings: Settings,
        run_id: str | None = None,
    ) -> "RunContext":
        return cls(
            run_id=run_id or str(uuid.uuid4()),
            inputs=inputs,
            layout=layout,
            runtime=runtime,
            settings=settings,
        )

    @property
    def manifest_path(self) -> Path:
        return self.layout.manifest_path
