"""Process entry point for ``python -m hudlink_app`` and the frozen agent binary."""

from __future__ import annotations

import sys

if __package__:
    from .cli import main as _cli_main
else:
    # Loaded by path (frozen binary, runpy) with no parent package.
    from hudlink_app.cli import main as _cli_main

# Service managers launch the agent bare; that means stream to the display.
DEFAULT_COMMAND = ["run"]


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    return int(_cli_main(args or list(DEFAULT_COMMAND)))


if __name__ == "__main__":
    raise SystemExit(main())
