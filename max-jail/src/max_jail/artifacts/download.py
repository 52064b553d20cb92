"""HTTP and archive helpers shared by the artifact sources and the SDK stage."""

from __future__ import annotations

import logging
import time
import zipfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from max_jail.artifacts.verifier import has_manifest_entry, is_zip_archive
from max_jail.errors import ArtifactInvalid, NetworkFailure

logger = logging.getLogger(__name__)

USER_AGENT = "max-in-jail/0.3"
_PROGRESS_STEP = 16 * 1024 * 1024


def make_client(
    *, timeout_s: float = 30.0, transport: Optional[httpx.BaseTransport] = None
) -> httpx.Client:
    return httpx.Client(
        timeout=httpx.Timeout(timeout_s),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, httpx.TransportError)


def _request(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    json_body: Optional[Dict[str, Any]] = None,
    retries: int = 3,
    backoff_s: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> httpx.Response:
    last: Optional[Exception] = None
    for attempt in range(max(1, retries)):
        try:
            resp = client.request(method, url, json=json_body)
            resp.raise_for_status()
            return resp
        except httpx.HTTPError as e:
            last = e
            if not _retryable(e) or attempt + 1 >= retries:
                break
            delay = backoff_s * (2**attempt)
            logger.debug("%s %s failed (%s), retrying in %.1fs", method, url, e, delay)
            sleep(delay)
    raise NetworkFailure(f"{method} {url} failed: {last}")


def request_json(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    json_body: Optional[Dict[str, Any]] = None,
    retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    resp = _request(client, method, url, json_body=json_body, retries=retries, sleep=sleep)
    try:
        data = resp.json()
    except ValueError as e:
        raise NetworkFailure(f"{method} {url}: response is not JSON") from e
    if not isinstance(data, dict):
        raise NetworkFailure(f"{method} {url}: top-level JSON must be an object")
    return data


def fetch_text(
    client: httpx.Client,
    url: str,
    *,
    retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    return _request(client, "GET", url, retries=retries, sleep=sleep).text


def unwrap_envelope(payload: Dict[str, Any], *, where: str) -> Dict[str, Any]:
    """Check `{"code": "OK", "body": {...}}` and return the body."""

    code = payload.get("code")
    if code != "OK":
        raise NetworkFailure(f"{where} returned unexpected code: {code or '<none>'}")
    body = payload.get("body")
    if not isinstance(body, dict):
        raise NetworkFailure(f"{where} response has no body object")
    return body


def stream_download(
    client: httpx.Client,
    url: str,
    dest: Path,
    *,
    resume: bool = True,
    chunk_size: int = 1 << 16,
) -> Path:
    """Stream `url` to `dest`, continuing a partial file with a Range request."""

    dest.parent.mkdir(parents=True, exist_ok=True)
    offset = dest.stat().st_size if resume and dest.is_file() else 0
    headers = {"Range": f"bytes={offset}-"} if offset else {}

    try:
        with client.stream("GET", url, headers=headers) as resp:
            if offset and resp.status_code == 416:
                logger.info("Download already complete: %s", dest.name)
                return dest
            resp.raise_for_status()
            append = bool(offset) and resp.status_code == 206
            if offset and not append:
                logger.debug("Server ignored range request, restarting %s", dest.name)
            total = resp.headers.get("Content-Length")
            logger.info(
                "Downloading %s (%s bytes%s)",
                dest.name,
                total or "unknown",
                f", resuming at {offset}" if append else "",
            )
            written = offset if append else 0
            next_report = written + _PROGRESS_STEP
            with dest.open("ab" if append else "wb") as f:
                for chunk in resp.iter_bytes(chunk_size):
                    f.write(chunk)
                    written += len(chunk)
                    if written >= next_report:
                        logger.debug("  %s: %d MiB", dest.name, written // (1024 * 1024))
                        next_report += _PROGRESS_STEP
    except httpx.HTTPError as e:
        raise NetworkFailure(f"download failed: {url}: {e}") from e
    return dest


def looks_like_container(path: Path) -> bool:
    """A zip that is not itself an APK but carries `.apk` entries."""

    if not is_zip_archive(path) or has_manifest_entry(path):
        return False
    return bool(apk_entry_names(path))


def apk_entry_names(path: Path) -> List[str]:
    with zipfile.ZipFile(path) as zf:
        return [
            info.filename
            for info in zf.infolist()
            if not info.is_dir() and info.filename.lower().endswith(".apk")
        ]


def _candidate_check(path: Path) -> bool:
    return is_zip_archive(path) and has_manifest_entry(path)


def unwrap_container(
    container: Path,
    work_dir: Path,
    *,
    is_artifact: Callable[[Path], bool] = _candidate_check,
) -> Tuple[Path, bool]:
    """Extract the APK from a container archive.

    Entries are tried in archive order; the first one that validates wins.
    When none validate the first `.apk` entry is returned with
    low_confidence=True. The caller still runs it through the verifier, so
    with the default check such an entry is rejected there; it is only kept
    when `is_artifact` is stricter than the verifier (a signature check, say).
    """

    extract_dir = work_dir / "extracted"
    extract_dir.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(container) as zf:
        infos = [
            i for i in zf.infolist() if not i.is_dir() and i.filename.lower().endswith(".apk")
        ]
        if not infos:
            listing = [i.filename for i in zf.infolist()][:10]
            raise ArtifactInvalid(
                f"no APK entry inside container {container.name}; entries: {listing}"
            )
        extracted: List[Path] = []
        for info in infos:
            candidate = Path(zf.extract(info, extract_dir))
            extracted.append(candidate)
            logger.debug("Checking candidate APK: %s", info.filename)
            if is_artifact(candidate):
                logger.info("Found valid APK in container: %s", info.filename)
                return candidate, False

    logger.warning(
        "No APK with %s found in container, using first entry: %s",
        "AndroidManifest.xml",
        extracted[0].name,
    )
    return extracted[0], True


def extract_zip_preserving_mode(archive: Path, dest: Path) -> None:
    """`ZipFile.extractall` drops unix permission bits; restore them."""

    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            out = Path(zf.extract(info, dest))
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                out.chmod(mode)
