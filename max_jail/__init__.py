"""Import shim for the src/ layout.

The real package lives under `max-jail/src/max_jail/`. When running the CLI
directly from the repo root (e.g. `python -m max_jail`), Python won't find that
path unless PYTHONPATH is set or the project is installed.

This shim makes the repo root runnable without extra env configuration by
extending the package search path to include the src directory.
"""

from __future__ import annotations

from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
_REAL_PKG = _REPO_ROOT / "max-jail" / "src" / "max_jail"
if _REAL_PKG.is_dir():
    __path__.append(str(_REAL_PKG))  # type: ignore[name-defined]

__all__ = [
    "artifacts",
    "cli",
    "config",
    "errors",
    "identity",
    "pipeline",
    "runtime",
]
