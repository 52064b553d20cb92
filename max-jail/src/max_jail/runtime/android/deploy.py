"""Install and launch the app inside the running device.

The manager keeps no state between calls: every `install()`/`launch()` derives
the package identity again from the artifact, the device registry and the
configuration, in that order.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, List, Optional

from max_jail.artifacts.verifier import Artifact
from max_jail.config import JailConfig
from max_jail.errors import IdentityUnresolved, InstallFailure, LaunchFailure
from max_jail.identity import is_valid_package_identity
from max_jail.runtime.android.controller import AdbResult, AndroidController
from max_jail.runtime.android.packages import (
    PackageState,
    all_packages,
    installed_version_name,
    near_matches,
    query_package_state,
    resolve_launcher_component,
)

logger = logging.getLogger(__name__)

# Secondary signal only: the exit status decides first.
_FAILURE_MARKERS_RE = re.compile(r"\b(failure|error|exception)\b", re.IGNORECASE)
_MONKEY_ABORTED_RE = re.compile(r"monkey aborted|no activities found", re.IGNORECASE)


def _first_line(text: str, limit: int = 200) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:limit]
    return ""


def install_failed(res: AdbResult) -> bool:
    if not res.ok():
        return True
    return _FAILURE_MARKERS_RE.search(res.output) is not None


class DeploymentManager:
    def __init__(
        self,
        config: JailConfig,
        *,
        controller: AndroidController,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.controller = controller
        self._sleep = sleep

    # --------------------------------------------------------------- identity

    def installed_known_package(self) -> Optional[str]:
        for name in self.config.known_packages:
            if query_package_state(self.controller, name).installed:
                return name
        return None

    def identity_candidates(self, artifact: Optional[Artifact] = None) -> List[str]:
        """Ordered, validated, de-duplicated package name candidates."""

        raw: List[Optional[str]] = []
        if artifact is not None:
            raw.append(artifact.package)
        raw.append(self.installed_known_package())
        raw.append(self.config.package_override)
        raw.append(self.config.default_package)

        out: List[str] = []
        for value in raw:
            if value is None:
                continue
            if not is_valid_package_identity(value):
                logger.warning("Rejecting invalid package name candidate: %r", value)
                continue
            if value not in out:
                out.append(value)
        return out

    def resolve_identity(self, artifact: Optional[Artifact] = None) -> str:
        candidates = self.identity_candidates(artifact)
        if not candidates:
            raise IdentityUnresolved("no valid package name candidate")
        return candidates[0]

    # ---------------------------------------------------------------- install

    def install(self, artifact: Artifact) -> str:
        """Install or update `artifact`; return the identity found on the device."""

        apk = Path(artifact.path)
        if not apk.is_file():
            raise InstallFailure(f"APK file not found: {apk}")

        identity = self.resolve_identity(artifact)
        state = query_package_state(self.controller, identity)
        if state.installed:
            version = installed_version_name(self.controller, identity) or "unknown"
            logger.info("%s is already installed (version %s); updating", identity, version)
        else:
            logger.info("Installing %s from %s", identity, apk.name)

        res = self.controller.install(
            apk, replace=state.installed, timeout_s=self.config.install_timeout_s
        )
        logger.debug("adb install output:\n%s", res.output)
        if not res.ok():
            raise InstallFailure(
                f"adb install failed (rc={res.returncode}): {_first_line(res.output)}"
            )
        if install_failed(res):
            raise InstallFailure(f"adb install reported a failure: {_first_line(res.output)}")

        self._sleep(self.config.install_settle_s)
        if query_package_state(self.controller, identity).installed:
            logger.info("Installed %s", identity)
            return identity

        return self._adopt_near_match(identity)

    def _adopt_near_match(self, identity: str) -> str:
        matches = near_matches(all_packages(self.controller), self.config.name_fragments)
        if len(matches) == 1:
            adopted = matches[0]
            if query_package_state(self.controller, adopted).installed:
                logger.warning(
                    "%s not found after install; the APK installed as %s", identity, adopted
                )
                return adopted
        raise IdentityUnresolved(
            f"package {identity} is not present after a successful install",
            near_matches=matches,
        )

    # ----------------------------------------------------------------- launch

    def _installed_state(
        self, identity: Optional[str], artifact: Optional[Artifact]
    ) -> PackageState:
        candidates = self.identity_candidates(artifact)
        if identity and is_valid_package_identity(identity) and identity not in candidates:
            candidates.insert(0, identity)
        for name in candidates:
            state = query_package_state(self.controller, name)
            if state.installed:
                return state
        raise LaunchFailure(f"app is not installed (tried: {', '.join(candidates)})")

    def launch(self, identity: Optional[str] = None, *, artifact: Optional[Artifact] = None) -> str:
        """Start the app's launcher activity; return the component started."""

        state = self._installed_state(identity, artifact)
        package = state.name

        if state.disabled:
            logger.info("%s is disabled; enabling", package)
            self.controller.enable_package(package)
            if query_package_state(self.controller, package).disabled:
                raise LaunchFailure(f"{package} is disabled and could not be enabled")

        component = resolve_launcher_component(self.controller, package)
        logger.info("Starting activity: %s", component)
        res = self.controller.start_activity(component)
        if res.ok() and not _FAILURE_MARKERS_RE.search(res.output):
            logger.info("Launched %s", package)
            return component

        logger.info(
            "am start failed (%s); trying monkey", _first_line(res.output) or res.returncode
        )
        res = self.controller.monkey_launch(package)
        if res.ok() and not _MONKEY_ABORTED_RE.search(res.output):
            logger.info("Launched %s via monkey", package)
            return component

        raise LaunchFailure(
            f"failed to launch {package} (activity {component}): {_first_line(res.output)}"
        )
