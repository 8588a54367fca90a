"""Pipeline orchestration layer.

`run_pipeline` is the single entrypoint used by the CLI: it resolves the
container runtime, validates inputs, prepares the output layout and hands the
stage list to `PipelineOrchestrator`.
"""

from .context import RunContext
from .run import RunResult, resolve_runtime, run_pipeline

__all__ = ["RunContext", "RunResult", "resolve_runtime", "run_pipeline"]
