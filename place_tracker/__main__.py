"""Module entry point: python -m place_tracker ..."""

from __future__ import annotations

from place_tracker.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
