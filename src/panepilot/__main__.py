"""Module entrypoint for `python -m panepilot`."""

from __future__ import annotations

from panepilot.cli import main_entry


if __name__ == "__main__":
    main_entry()
