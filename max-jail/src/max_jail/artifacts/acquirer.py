"""APK acquisition chain with a version-aware local cache.

An existing valid APK at the target path short-circuits the chain with no
network access. A remote version (from `check_remote_version()`) that differs
from the local version code marks the cached file stale; it is deleted and the
chain runs again.

The local version comes from badging when an inspection tool is available and
otherwise from a JSON sidecar written next to the APK on promotion.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from max_jail.artifacts.download import make_client
from max_jail.artifacts.sources import (
    ArtifactSource,
    RemoteVersion,
    RuStoreSource,
    SourceAttempt,
    default_sources,
)
from max_jail.artifacts.verifier import Artifact, ArtifactVerifier
from max_jail.config import JailConfig
from max_jail.errors import ArtifactInvalid, ArtifactSourceExhausted, JailError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], httpx.Client]


def sidecar_path(apk: Path) -> Path:
    return apk.with_name(apk.name + ".json")


def write_sidecar(artifact: Artifact) -> None:
    data = {
        "version_name": artifact.version_name,
        "version_code": artifact.version_code,
        "source": artifact.source,
        "low_confidence": artifact.low_confidence,
    }
    sidecar_path(artifact.path).write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def read_sidecar(apk: Path) -> Dict[str, Any]:
    path = sidecar_path(apk)
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable version sidecar %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def _sidecar_code(data: Dict[str, Any]) -> Optional[int]:
    value = data.get("version_code")
    if isinstance(value, bool):
        return None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def discard(apk: Path) -> None:
    for path in (apk, sidecar_path(apk)):
        if path.exists():
            path.unlink()


class ArtifactAcquirer:
    def __init__(
        self,
        config: JailConfig,
        *,
        verifier: ArtifactVerifier,
        sources: Optional[Sequence[ArtifactSource]] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.config = config
        self.verifier = verifier
        self.sources: List[ArtifactSource] = list(
            sources if sources is not None else default_sources(config)
        )
        self._client_factory = client_factory or (
            lambda: make_client(timeout_s=config.http_timeout_s)
        )

    # ----------------------------------------------------------------- cache

    def cached(self, target_path: Path) -> Optional[Artifact]:
        """Return the cached artifact if it verifies, else None."""

        if not target_path.is_file():
            return None
        artifact = self.verifier.inspect(target_path)
        if not artifact.valid:
            return None
        meta = read_sidecar(target_path)
        if artifact.source is None and meta.get("source"):
            artifact = replace(
                artifact,
                source=str(meta["source"]),
                low_confidence=bool(meta.get("low_confidence", False)),
            )
        name = meta.get("version_name")
        return artifact.with_version(
            name=str(name) if name else None, code=_sidecar_code(meta)
        )

    def check_remote_version(self) -> Optional[RemoteVersion]:
        """Lightweight metadata lookup; failures are logged, never raised."""

        source = RuStoreSource(self.config)
        try:
            with self._client_factory() as client:
                remote = source.fetch_metadata(client)
        except JailError as e:
            logger.warning("Could not check remote version: %s", e)
            return None
        logger.info("Remote version: %s (code=%s)", remote.version_name, remote.version_code)
        return remote

    def _is_stale(self, local: Artifact, remote: Optional[RemoteVersion]) -> bool:
        if remote is None:
            return False
        if local.version_code is None:
            logger.info("Local APK version unknown, remote is %s", remote.version_code)
            return True
        return local.version_code != remote.version_code

    # ------------------------------------------------------------- acquisition

    def acquire(
        self,
        target_path: Optional[Path] = None,
        *,
        remote_version: Optional[RemoteVersion] = None,
    ) -> Artifact:
        target = Path(target_path) if target_path is not None else self.config.apk_path

        local = self.cached(target)
        if local is not None:
            if not self._is_stale(local, remote_version):
                logger.info(
                    "APK already present: %s (version %s)",
                    target,
                    local.version_name or "unknown",
                )
                return local
            logger.info(
                "Cached APK is stale (local=%s, remote=%s); re-downloading",
                local.version_code,
                remote_version.version_code if remote_version else None,
            )
            discard(target)
        elif target.exists():
            logger.warning("Removing invalid cached APK: %s", target)
            discard(target)

        artifact = self._run_chain(target)
        write_sidecar(artifact)
        logger.info(
            "APK ready: %s (%d bytes, source=%s%s)",
            artifact.path,
            artifact.size,
            artifact.source,
            ", low confidence" if artifact.low_confidence else "",
        )
        return artifact

    def _run_chain(self, target: Path) -> Artifact:
        attempts: List[SourceAttempt] = []
        with self._client_factory() as client:
            for source in self.sources:
                reason = source.skip_reason()
                if reason:
                    logger.info("[%s] skipped: %s", source.name, reason)
                    attempts.append(
                        SourceAttempt(
                            source=source.name, ok=False, error=f"skipped: {reason}", skipped=True
                        )
                    )
                    continue
                logger.info("Trying source: %s", source.name)
                try:
                    artifact = source.attempt(target, self.verifier, client)
                except JailError as e:
                    preserved = list(e.details.get("preserved", []))
                    logger.warning("[%s] failed: %s", source.name, e)
                    attempts.append(
                        SourceAttempt(
                            source=source.name, ok=False, error=str(e), preserved=preserved
                        )
                    )
                    continue
                attempts.append(SourceAttempt(source=source.name, ok=True))
                return artifact
        raise ArtifactSourceExhausted(attempts)

    def use_supplied(self, path: Path) -> Artifact:
        """Accept an operator-supplied APK (`--apk`) without any network access."""

        path = Path(path).expanduser()
        if not path.is_file():
            raise ArtifactInvalid(f"APK not found: {path}")
        artifact = self.verifier.inspect(path, source="local")
        if not artifact.valid:
            raise ArtifactInvalid(f"not a valid APK: {path}")
        logger.info("Using supplied APK: %s (%d bytes)", path, artifact.size)
        return artifact
