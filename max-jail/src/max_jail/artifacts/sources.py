"""APK sources for the acquisition chain.

Every source implements `fetch(work_dir, client)`, which leaves *something*
downloaded inside its private work directory. The shared `attempt()` then
unwraps containers, verifies, and promotes the result to the target path.
Work directories are removed only after a successful promotion; on failure
their contents are listed in the raised error for inspection.
"""

from __future__ import annotations

import html
import logging
import os
import re
import shutil
import zipfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urljoin

import httpx

from max_jail.artifacts.download import (
    fetch_text,
    looks_like_container,
    request_json,
    stream_download,
    unwrap_container,
    unwrap_envelope,
)
from max_jail.artifacts.verifier import Artifact, ArtifactVerifier
from max_jail.config import JailConfig
from max_jail.errors import ArtifactInvalid, JailError, NetworkFailure
from max_jail.runtime.tools import Runner, probe, run_tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteVersion:
    source: str
    package: str
    app_id: Any
    version_name: str
    version_code: int


@dataclass(frozen=True)
class FetchResult:
    path: Path
    version: Optional[RemoteVersion] = None


@dataclass
class SourceAttempt:
    source: str
    ok: bool
    error: str = ""
    skipped: bool = False
    preserved: List[Path] = field(default_factory=list)


def _list_files(root: Path) -> List[Path]:
    if not root.exists():
        return []
    return sorted(p for p in root.rglob("*") if p.is_file())


class ArtifactSource:
    name = "source"

    def __init__(self, config: JailConfig) -> None:
        self.config = config

    @property
    def target_package(self) -> str:
        return self.config.package_override or self.config.default_package

    def work_dir(self, target_path: Path) -> Path:
        return target_path.parent / f".work-{self.name}"

    def skip_reason(self) -> Optional[str]:
        """Return why this source cannot run at all (None = runnable)."""

        return None

    def fetch(self, work_dir: Path, client: httpx.Client) -> FetchResult:
        raise NotImplementedError

    def _download(self, client: httpx.Client, url: str, work_dir: Path) -> Path:
        partial = work_dir / "download.part"
        final = work_dir / "download.bin"
        if final.exists():
            final.unlink()
        stream_download(client, url, partial, resume=True)
        os.replace(partial, final)
        return final

    def attempt(
        self, target_path: Path, verifier: ArtifactVerifier, client: httpx.Client
    ) -> Artifact:
        work_dir = self.work_dir(target_path)
        shutil.rmtree(work_dir / "extracted", ignore_errors=True)
        work_dir.mkdir(parents=True, exist_ok=True)

        try:
            fetched = self.fetch(work_dir, client)
            candidate, low_confidence = fetched.path, False
            if looks_like_container(candidate):
                logger.info("[%s] Extracting APK from container...", self.name)
                candidate, low_confidence = unwrap_container(candidate, work_dir)

            artifact = verifier.inspect(candidate, source=self.name)
            if not artifact.valid:
                raise ArtifactInvalid(
                    f"{self.name}: downloaded file is not a valid APK: {candidate.name}"
                )
            target_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(candidate, target_path)
        except JailError as e:
            e.details["preserved"] = _list_files(work_dir)
            raise
        except (OSError, zipfile.BadZipFile) as e:
            raise ArtifactInvalid(
                f"{self.name}: {type(e).__name__}: {e}",
                details={"preserved": _list_files(work_dir)},
            ) from e

        shutil.rmtree(work_dir, ignore_errors=True)
        version = fetched.version
        artifact = replace(artifact, path=target_path, low_confidence=low_confidence)
        if version is not None:
            artifact = artifact.with_version(name=version.version_name, code=version.version_code)
        return artifact


class CatalogSource(ArtifactSource):
    """Two-call catalog protocol: metadata GET, then download-link POST.

    Both responses use the envelope `{"code": "OK", "body": {...}}`.
    """

    metadata_url_template = ""
    download_link_url = ""
    url_field = "apkUrl"

    def __init__(self, config: JailConfig, *, catalog_package: Optional[str] = None) -> None:
        super().__init__(config)
        self._catalog_package = catalog_package

    def app_identifier(self) -> str:
        return self._catalog_package or self.target_package

    def fetch_metadata(self, client: httpx.Client) -> RemoteVersion:
        package = self.app_identifier()
        url = self.metadata_url_template.format(package=quote(package, safe=""))
        logger.info("[%s] Fetching app info (%s)...", self.name, package)
        body = unwrap_envelope(
            request_json(client, "GET", url, retries=self.config.http_retries),
            where=f"{self.name} metadata",
        )
        app_id = body.get("appId")
        version_name = body.get("versionName")
        version_code = body.get("versionCode")
        if app_id in (None, "") or not version_name or version_code in (None, ""):
            raise NetworkFailure(f"{self.name}: metadata is missing appId/versionName/versionCode")
        try:
            code = int(version_code)
        except (TypeError, ValueError) as e:
            raise NetworkFailure(f"{self.name}: bad versionCode {version_code!r}") from e
        return RemoteVersion(
            source=self.name,
            package=package,
            app_id=app_id,
            version_name=str(version_name),
            version_code=code,
        )

    def download_link_request(self, meta: RemoteVersion) -> Dict[str, Any]:
        return {"appId": meta.app_id, "firstInstall": True}

    def fetch_download_url(self, client: httpx.Client, meta: RemoteVersion) -> str:
        logger.info("[%s] Requesting APK download link...", self.name)
        body = unwrap_envelope(
            request_json(
                client,
                "POST",
                self.download_link_url,
                json_body=self.download_link_request(meta),
                retries=self.config.http_retries,
            ),
            where=f"{self.name} download-link",
        )
        url = body.get(self.url_field)
        if not isinstance(url, str) or not url.strip():
            raise NetworkFailure(f"{self.name}: download-link response has no {self.url_field}")
        return url.strip()

    def fetch(self, work_dir: Path, client: httpx.Client) -> FetchResult:
        meta = self.fetch_metadata(client)
        logger.info(
            "[%s] Found version: %s (code=%s, appId=%s)",
            self.name,
            meta.version_name,
            meta.version_code,
            meta.app_id,
        )
        url = self.fetch_download_url(client, meta)
        return FetchResult(path=self._download(client, url, work_dir), version=meta)


class RuStoreSource(CatalogSource):
    """RuStore catalog; its downloads are zip containers wrapping the APK."""

    name = "rustore"
    metadata_url_template = "https://backapi.rustore.ru/applicationData/overallInfo/{package}"
    download_link_url = "https://backapi.rustore.ru/applicationData/download-link"

    # Max is published in RuStore under this name regardless of the
    # package name the operator targets on the device.
    CATALOG_PACKAGE = "ru.oneme.app"

    def __init__(self, config: JailConfig) -> None:
        super().__init__(config, catalog_package=self.CATALOG_PACKAGE)


class PageLinkSource(ArtifactSource):
    """Catalogs without an API: fetch a page, take the first matching link."""

    page_url_template = ""
    base_url = ""
    link_re = re.compile(r"$^")

    def page_url(self) -> str:
        return self.page_url_template.format(package=quote(self.target_package, safe=""))

    def fetch(self, work_dir: Path, client: httpx.Client) -> FetchResult:
        page_url = self.page_url()
        logger.info("[%s] Looking up download link...", self.name)
        page = fetch_text(client, page_url, retries=self.config.http_retries)
        m = self.link_re.search(page)
        if not m:
            raise NetworkFailure(f"{self.name}: no download link found at {page_url}")
        url = urljoin(self.base_url or page_url, html.unescape(m.group(1)))
        return FetchResult(path=self._download(client, url, work_dir))


class ApkMirrorSource(PageLinkSource):
    name = "apkmirror"
    base_url = "https://www.apkmirror.com"
    page_url_template = (
        "https://www.apkmirror.com/?post_type=app_release&searchtype=apk&s={package}"
    )
    link_re = re.compile(r'href="([^"]*/apk/[^"]*download[^"]*)"')


class ApkPureSource(PageLinkSource):
    name = "apkpure"
    base_url = "https://apkpure.com"
    page_url_template = "https://apkpure.com/{package}/{package}/download"
    link_re = re.compile(r'href="([^"]*apk[^"]*download[^"]*)"')


class ApkeepSource(ArtifactSource):
    """Google Play via the `apkeep` tool; needs account credentials."""

    name = "apkeep"

    def __init__(self, config: JailConfig, *, runner: Runner = run_tool) -> None:
        super().__init__(config)
        self._runner = runner

    def skip_reason(self) -> Optional[str]:
        if not self.config.has_google_credentials:
            return "GOOGLE_EMAIL/GOOGLE_PASSWORD not configured"
        avail = probe("apkeep", env=self.config.subprocess_env(), runner=self._runner)
        if not avail.usable():
            return "apkeep is not installed"
        return None

    def fetch(self, work_dir: Path, client: httpx.Client) -> FetchResult:
        out_dir = work_dir / "apkeep"
        out_dir.mkdir(parents=True, exist_ok=True)
        cmd = [
            "apkeep",
            "-a",
            self.target_package,
            "-d",
            "google-play",
            "-e",
            str(self.config.google_email),
            "-t",
            str(self.config.google_token),
            str(out_dir),
        ]
        logger.info("[%s] Downloading %s from Google Play...", self.name, self.target_package)
        res = self._runner(cmd, env=self.config.subprocess_env(), timeout_s=900)
        if not res.ok():
            first = (res.output.splitlines() or [""])[0][:200]
            raise NetworkFailure(f"apkeep failed (rc={res.returncode}): {first}")
        apks = sorted(out_dir.rglob("*.apk"))
        if not apks:
            raise ArtifactInvalid("apkeep finished but produced no .apk file")
        return FetchResult(path=apks[0])


def default_sources(config: JailConfig) -> List[ArtifactSource]:
    return [
        RuStoreSource(config),
        ApkMirrorSource(config),
        ApkPureSource(config),
        ApkeepSource(config),
    ]
