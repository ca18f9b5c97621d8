"""HTTP facade for the dashboard."""

from __future__ import annotations

from .app import VERSION, create_app, main

__all__ = ["VERSION", "create_app", "main"]
