"""APK verification and identity extraction.

`verify()` is a pure predicate over file contents: the file must be a zip
archive with an `AndroidManifest.xml` entry. The inspection tool (aapt2, else
aapt) never decides validity; an old build-tools release may fail to parse a
newer APK. Identity and version come from the `package:` line of its
`dump badging` output when that succeeds.
"""

from __future__ import annotations

import logging
import re
import zipfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from max_jail.identity import normalize_package_identity
from max_jail.runtime.tools import ToolResult, find_build_tool, run_tool

logger = logging.getLogger(__name__)

MANIFEST_ENTRY = "AndroidManifest.xml"

_BADGING_ATTR_RE = re.compile(r"(\w+)='([^']*)'")


@dataclass(frozen=True)
class Artifact:
    path: Path
    size: int
    valid: bool
    package: Optional[str] = None
    version_name: Optional[str] = None
    version_code: Optional[int] = None
    source: Optional[str] = None
    low_confidence: bool = False

    def with_version(self, *, name: Optional[str], code: Optional[int]) -> "Artifact":
        return replace(
            self,
            version_name=self.version_name or name,
            version_code=self.version_code if self.version_code is not None else code,
        )


def is_zip_archive(path: Path) -> bool:
    try:
        return path.is_file() and zipfile.is_zipfile(path)
    except OSError:
        return False


def has_manifest_entry(path: Path) -> bool:
    """Exact-name check for the manifest entry (no substring matching)."""

    try:
        with zipfile.ZipFile(path) as zf:
            return MANIFEST_ENTRY in zf.namelist()
    except (OSError, zipfile.BadZipFile):
        return False


def parse_badging(txt: str) -> Dict[str, str]:
    """Return the attributes of the first `package:` line of badging output."""

    for raw in txt.splitlines():
        line = raw.strip()
        if line.startswith("package:"):
            return dict(_BADGING_ATTR_RE.findall(line))
    return {}


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


class ApkInspector:
    """Runs `aapt2 dump badging` (or aapt) from the SDK build-tools."""

    def __init__(
        self,
        build_tools_root: Path,
        *,
        env: Optional[Dict[str, str]] = None,
        runner: Callable[..., ToolResult] = run_tool,
    ) -> None:
        self._root = build_tools_root
        self._env = env
        self._runner = runner

    def tool(self) -> Optional[Path]:
        return find_build_tool(self._root, "aapt2") or find_build_tool(self._root, "aapt")

    def available(self) -> bool:
        return self.tool() is not None

    def badging(self, apk: Path) -> Optional[str]:
        tool = self.tool()
        if tool is None:
            return None
        res = self._runner([str(tool), "dump", "badging", str(apk)], env=self._env, timeout_s=120)
        if not res.ok() or not res.stdout.strip():
            logger.warning("%s badging failed for %s: %s", tool.name, apk, res.output[:300])
            return None
        return res.stdout


class ArtifactVerifier:
    def __init__(self, inspector: Optional[ApkInspector] = None) -> None:
        self._inspector = inspector

    @property
    def inspector(self) -> Optional[ApkInspector]:
        return self._inspector

    def _badging_attrs(self, path: Path) -> Optional[Dict[str, str]]:
        if self._inspector is None or not self._inspector.available():
            return None
        out = self._inspector.badging(path)
        return parse_badging(out) if out is not None else {}

    def verify(self, path: Path) -> bool:
        path = Path(path)
        return is_zip_archive(path) and has_manifest_entry(path)

    def extract_identity(self, path: Path) -> Optional[str]:
        attrs = self._badging_attrs(Path(path))
        if not attrs:
            return None
        name = normalize_package_identity(attrs.get("name"))
        if name is None and attrs.get("name"):
            logger.warning("Ignoring malformed package name from badging: %r", attrs.get("name"))
        return name

    def inspect(self, path: Path, *, source: Optional[str] = None) -> Artifact:
        """Build an Artifact for `path`, filling identity fields when possible."""

        path = Path(path)
        size = path.stat().st_size if path.is_file() else 0
        valid = self.verify(path)
        if not valid:
            return Artifact(path=path, size=size, valid=False, source=source)

        attrs = self._badging_attrs(path) or {}
        return Artifact(
            path=path,
            size=size,
            valid=True,
            package=normalize_package_identity(attrs.get("name")),
            version_name=attrs.get("versionName") or None,
            version_code=_parse_int(attrs.get("versionCode")),
            source=source,
        )
