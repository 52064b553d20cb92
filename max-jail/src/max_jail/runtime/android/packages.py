"""Package registry queries and launcher-activity resolution.

Launcher resolution is a list of small adapters, each wrapping one way of
asking the device for the MAIN/LAUNCHER component. The structured query goes
first; the `pm dump` text scan is the fallback. Callers only see
`resolve_launcher_component()`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from max_jail.identity import is_valid_package_identity
from max_jail.runtime.android.controller import parse_component

logger = logging.getLogger(__name__)

_COMPONENT_RE = re.compile(r"\b([A-Za-z][\w.]*/[\w.$]+)\b")
_DUMP_FILTER_LINE_RE = re.compile(r"^\s*[0-9a-f]+\s+([A-Za-z][\w.]*/[\w.$]+)(?:\s|$)")


@dataclass(frozen=True)
class PackageState:
    name: str
    installed: bool
    enabled: bool

    @property
    def disabled(self) -> bool:
        return self.installed and not self.enabled


def query_package_state(controller: Any, package: str) -> PackageState:
    """Exact-name lookup across the enabled and the disabled listing.

    A disabled package is absent from `pm list packages -e`; checking only the
    enabled list misreports it as not installed.
    """

    enabled = set(controller.list_packages("-e"))
    if package in enabled:
        return PackageState(name=package, installed=True, enabled=True)
    disabled = set(controller.list_packages("-d"))
    if package in disabled:
        return PackageState(name=package, installed=True, enabled=False)
    return PackageState(name=package, installed=False, enabled=False)


def all_packages(controller: Any) -> List[str]:
    names = list(controller.list_packages("-e"))
    for name in controller.list_packages("-d"):
        if name not in names:
            names.append(name)
    return names


def near_matches(packages: Iterable[str], fragments: Sequence[str]) -> List[str]:
    """Valid package names containing any of `fragments` (case-insensitive)."""

    lowered = [f.lower() for f in fragments if f]
    out: List[str] = []
    for name in packages:
        if not is_valid_package_identity(name):
            continue
        low = name.lower()
        if any(frag in low for frag in lowered) and name not in out:
            out.append(name)
    return out


_VERSION_NAME_RE = re.compile(r"^\s*versionName=(\S+)", re.MULTILINE)


def installed_version_name(controller: Any, package: str) -> Optional[str]:
    res = controller.package_dump(package)
    if not res.ok():
        return None
    m = _VERSION_NAME_RE.search(res.stdout)
    return m.group(1) if m else None


def _normalize_component(component: str, package: str) -> Optional[str]:
    pkg, activity = parse_component(component)
    if pkg != package or not activity:
        return None
    return f"{pkg}/{activity}"


class ResolveActivityQuery:
    """`cmd package resolve-activity --brief`: last line is `pkg/Activity`."""

    name = "resolve-activity"

    def resolve(self, controller: Any, package: str) -> Optional[str]:
        res = controller.resolve_launcher_activity(package)
        if not res.ok():
            return None
        lines = [ln.strip() for ln in res.stdout.splitlines() if ln.strip()]
        if not lines:
            return None
        m = _COMPONENT_RE.fullmatch(lines[-1])
        if not m:
            return None
        return _normalize_component(m.group(1), package)


class PackageDumpScan:
    """Scan `pm dump <pkg>` for the activity registered under action MAIN."""

    name = "pm-dump"

    def resolve(self, controller: Any, package: str) -> Optional[str]:
        res = controller.package_dump(package)
        if not res.ok():
            return None
        return extract_main_activity_from_dump(res.stdout, package)


def extract_main_activity_from_dump(txt: str, package: str) -> Optional[str]:
    lines = txt.splitlines()
    for i, line in enumerate(lines):
        if "android.intent.action.MAIN" not in line:
            continue
        for follow in lines[i + 1 : i + 3]:
            m = _DUMP_FILTER_LINE_RE.match(follow)
            if not m:
                continue
            component = _normalize_component(m.group(1), package)
            if component:
                return component
    return None


LAUNCHER_RESOLVERS = (ResolveActivityQuery(), PackageDumpScan())


def default_component(package: str) -> str:
    return f"{package}/{package}.MainActivity"


def resolve_launcher_component(
    controller: Any,
    package: str,
    *,
    resolvers: Sequence[Any] = LAUNCHER_RESOLVERS,
) -> str:
    for resolver in resolvers:
        try:
            component = resolver.resolve(controller, package)
        except Exception as e:
            logger.debug("launcher resolver %s failed: %r", resolver.name, e)
            continue
        if component:
            logger.info("Main activity (%s): %s", resolver.name, component)
            return component
    component = default_component(package)
    logger.warning("Could not determine main activity, guessing %s", component)
    return component
