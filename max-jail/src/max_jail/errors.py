"""Failure taxonomy for the provisioning pipeline.

Every class carries the name of the pipeline stage it belongs to so the
orchestrator can print a diagnostic without knowing which component raised.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence


class JailError(RuntimeError):
    """Base class for all pipeline failures."""

    stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.details: Dict[str, Any] = dict(details or {})


class ToolMissing(JailError):
    """A required external tool is not on the search path."""

    stage = "prerequisites"

    def __init__(self, tool: str, *, stage: Optional[str] = None) -> None:
        super().__init__(f"required tool not found: {tool}", stage=stage)
        self.tool = tool


class ToolNonfunctional(JailError):
    """A tool is present but its liveness check failed."""

    stage = "prerequisites"

    def __init__(self, tool: str, detail: str = "", *, stage: Optional[str] = None) -> None:
        msg = f"tool is present but not working: {tool}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg, stage=stage)
        self.tool = tool


class NetworkFailure(JailError):
    stage = "acquire"


class ArtifactInvalid(JailError):
    stage = "acquire"


class ArtifactSourceExhausted(JailError):
    """Every source in the acquisition chain failed."""

    stage = "acquire"

    def __init__(self, attempts: Sequence[Any]) -> None:
        lines = ["all APK sources failed:"]
        preserved: List[Path] = []
        for attempt in attempts:
            lines.append(f"  - {attempt.source}: {attempt.error}")
            preserved.extend(attempt.preserved)
        if preserved:
            lines.append("temporary files preserved for inspection:")
            lines.extend(f"  {p}" for p in preserved)
        super().__init__("\n".join(lines))
        self.attempts = list(attempts)
        self.preserved = preserved


class DeviceArchitectureMismatch(JailError):
    """Recorded AVD architecture differs from the host; triggers recreation."""

    stage = "device"

    def __init__(self, name: str, recorded: str, host: str) -> None:
        super().__init__(f"AVD {name!r} uses {recorded} but host needs {host}")
        self.recorded = recorded
        self.host = host


class DeviceStartFailure(JailError):
    stage = "device"


class DeviceTimeout(JailError):
    stage = "boot"


class IdentityUnresolved(JailError):
    """No package name candidate passed validation or was found on the device."""

    stage = "install"

    def __init__(
        self,
        message: str,
        *,
        near_matches: Iterable[str] = (),
        stage: Optional[str] = None,
    ) -> None:
        self.near_matches = sorted(set(near_matches))
        if self.near_matches:
            message += "\nnear-matching packages on device:\n" + "\n".join(
                f"  {name}" for name in self.near_matches
            )
        super().__init__(message, stage=stage)


class InstallFailure(JailError):
    stage = "install"


class LaunchFailure(JailError):
    stage = "launch"
