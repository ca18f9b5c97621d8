"""Module entrypoint to run `python -m pgdash`."""

from __future__ import annotations

from .api.app import main

if __name__ == "__main__":
    main()
