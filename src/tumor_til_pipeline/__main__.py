"""Package entry point.

Preferred invocation is via the installed console script:

    tumor-til-pipeline ...

`python -m tumor_til_pipeline ...` works as well.
"""

from __future__ import annotations

from .cli import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
