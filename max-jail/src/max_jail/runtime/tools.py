"""External tool invocation and availability probing.

`probe()` answers two questions about a tool: is it resolvable (present) and
does it actually run (functional). The second matters because a wrapper script
can exist while the runtime beneath it is broken (a dangling JDK symlink makes
`sdkmanager` present but useless). Results are never cached.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple

from max_jail.errors import ToolMissing, ToolNonfunctional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return ((self.stdout or "") + "\n" + (self.stderr or "")).strip()


Runner = Callable[..., ToolResult]


def run_tool(
    cmd: Sequence[str],
    *,
    env: Optional[Mapping[str, str]] = None,
    timeout_s: float | None = None,
    input_text: Optional[str] = None,
) -> ToolResult:
    """Run a tool synchronously and capture its output.

    A missing executable is reported as returncode 127 rather than raised, so
    callers can treat it like any other failed invocation.
    """

    args = [str(c) for c in cmd]
    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            env=dict(env) if env is not None else None,
            timeout=timeout_s,
            input=input_text,
            check=False,
        )
    except FileNotFoundError as e:
        return ToolResult(args=args, stdout="", stderr=str(e), returncode=127)
    except PermissionError as e:
        return ToolResult(args=args, stdout="", stderr=str(e), returncode=126)
    return ToolResult(
        args=args,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        returncode=proc.returncode,
    )


@dataclass(frozen=True)
class ToolAvailability:
    name: str
    path: Optional[str]
    present: bool
    functional: bool
    detail: str = ""

    def usable(self) -> bool:
        return self.present and self.functional


# tool -> (liveness args, pattern expected in stdout+stderr; None = exit status only)
LIVENESS: Dict[str, Tuple[Tuple[str, ...], Optional[str]]] = {
    "java": (("-version",), r"version"),
    "adb": (("version",), r"Android Debug Bridge"),
    "emulator": (("-version",), r"Android emulator version"),
    "sdkmanager": (("--version",), r"\d+\.\d+"),
    "avdmanager": (("list", "target", "-c"), None),
    "aapt2": (("version",), r"Android Asset Packaging Tool"),
    "aapt": (("version",), r"Android Asset Packaging Tool"),
    "apkeep": (("--version",), r"apkeep"),
}


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def resolve_tool(
    name: str,
    *,
    path: Optional[Path] = None,
    search_path: Optional[str] = None,
) -> Optional[str]:
    if path is not None:
        return str(path) if _is_executable(Path(path)) else None
    return shutil.which(name, path=search_path)


def probe(
    name: str,
    *,
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    runner: Runner = run_tool,
    timeout_s: float = 60.0,
) -> ToolAvailability:
    """Detect whether `name` is present and functional (pure query)."""

    search_path = env.get("PATH") if env is not None else None
    resolved = resolve_tool(name, path=path, search_path=search_path)
    if resolved is None:
        return ToolAvailability(name=name, path=None, present=False, functional=False)

    liveness = LIVENESS.get(name)
    if liveness is None:
        return ToolAvailability(name=name, path=resolved, present=True, functional=True)

    args, pattern = liveness
    try:
        res = runner([resolved, *args], env=env, timeout_s=timeout_s)
    except subprocess.TimeoutExpired:
        return ToolAvailability(
            name=name, path=resolved, present=True, functional=False, detail="liveness timed out"
        )

    if pattern is None:
        functional = res.ok()
    else:
        functional = re.search(pattern, res.output) is not None
    detail = "" if functional else (res.output.splitlines() or [f"rc={res.returncode}"])[0][:200]
    return ToolAvailability(
        name=name, path=resolved, present=True, functional=functional, detail=detail
    )


def require(
    name: str,
    *,
    stage: str,
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    runner: Runner = run_tool,
) -> ToolAvailability:
    """Gate a pipeline stage on a tool; raises ToolMissing/ToolNonfunctional."""

    avail = probe(name, path=path, env=env, runner=runner)
    if not avail.present:
        raise ToolMissing(name, stage=stage)
    if not avail.functional:
        raise ToolNonfunctional(name, avail.detail, stage=stage)
    logger.debug("tool ok: %s (%s)", name, avail.path)
    return avail


def _version_key(text: str) -> Tuple[int, ...]:
    parts = []
    for piece in re.split(r"[.\-]", text):
        parts.append(int(piece) if piece.isdigit() else -1)
    return tuple(parts)


def find_build_tool(build_tools_root: Path, name: str) -> Optional[Path]:
    """Return `<build-tools>/<newest version>/<name>` if it exists."""

    if not build_tools_root.is_dir():
        return None
    versions = sorted(
        (d for d in build_tools_root.iterdir() if d.is_dir()),
        key=lambda d: _version_key(d.name),
        reverse=True,
    )
    for version_dir in versions:
        candidate = version_dir / name
        if _is_executable(candidate):
            return candidate
    return None
