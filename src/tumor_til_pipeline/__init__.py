"""Container orchestration for the tumor/TIL whole-slide-image pipeline."""

__version__ = "0.1.0"
