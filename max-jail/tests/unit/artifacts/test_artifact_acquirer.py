from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from catalog_fakes import CDN_URL, DOWNLOAD_LINK, Catalog
from jail_fakes import write_apk
from max_jail.artifacts.acquirer import ArtifactAcquirer, read_sidecar, sidecar_path, write_sidecar
from max_jail.artifacts.sources import RemoteVersion
from max_jail.artifacts.verifier import ArtifactVerifier
from max_jail.errors import ArtifactInvalid, ArtifactSourceExhausted


def _acquirer(config, catalog: Catalog) -> ArtifactAcquirer:
    return ArtifactAcquirer(config, verifier=ArtifactVerifier(), client_factory=catalog.client)


def test_catalog_container_is_unwrapped_and_promoted(config) -> None:
    catalog = Catalog()
    artifact = _acquirer(config, catalog).acquire()

    target = config.apk_path
    assert artifact.path == target
    assert target.is_file()
    assert artifact.source == "rustore"
    assert artifact.version_name == "25.19.0"
    assert artifact.version_code == 251900
    assert not artifact.low_confidence

    assert catalog.posted_json() == [{"appId": 9001, "firstInstall": True}]
    assert read_sidecar(target)["version_code"] == 251900
    assert not (target.parent / ".work-rustore").exists()


def test_second_acquire_makes_no_requests(config) -> None:
    catalog = Catalog()
    acquirer = _acquirer(config, catalog)
    first = acquirer.acquire()
    requests_after_first = len(catalog.requests)

    second = acquirer.acquire()

    assert len(catalog.requests) == requests_after_first
    assert second == first


def test_newer_remote_version_replaces_cached_apk(config) -> None:
    catalog = Catalog(version_name="25.18.0", version_code=251800)
    acquirer = _acquirer(config, catalog)
    acquirer.acquire()
    assert read_sidecar(config.apk_path)["version_code"] == 251800

    catalog.set_version("25.19.0", 251900)
    remote = acquirer.check_remote_version()
    assert remote is not None and remote.version_code == 251900

    refreshed = acquirer.acquire(remote_version=remote)
    assert refreshed.version_code == 251900
    assert read_sidecar(config.apk_path)["version_name"] == "25.19.0"
    assert sum(1 for r in catalog.requests if str(r.url) == CDN_URL) == 2


def test_matching_remote_version_keeps_cache(config) -> None:
    catalog = Catalog()
    acquirer = _acquirer(config, catalog)
    acquirer.acquire()
    before = len(catalog.requests)

    same = RemoteVersion(
        source="rustore",
        package="ru.oneme.app",
        app_id=9001,
        version_name="25.19.0",
        version_code=251900,
    )
    acquirer.acquire(remote_version=same)
    assert len(catalog.requests) == before


def test_cached_apk_without_known_version_is_refreshed(config) -> None:
    write_apk(config.apk_path)
    catalog = Catalog()
    acquirer = _acquirer(config, catalog)

    remote = acquirer.check_remote_version()
    artifact = acquirer.acquire(remote_version=remote)

    assert artifact.version_code == 251900
    assert any(str(r.url) == CDN_URL for r in catalog.requests)


def test_invalid_cached_file_is_discarded(config) -> None:
    config.apk_path.parent.mkdir(parents=True)
    config.apk_path.write_text("<html>interrupted</html>")
    sidecar_path(config.apk_path).write_text("{not json")

    artifact = _acquirer(config, Catalog()).acquire()
    assert artifact.valid
    assert read_sidecar(config.apk_path)["source"] == "rustore"


def test_all_sources_failing_lists_attempts_and_preserved_files(config) -> None:
    catalog = Catalog()
    catalog.route("GET", CDN_URL, httpx.Response(200, text="<html>captcha</html>"))
    catalog.route(
        "GET",
        "https://www.apkmirror.com/?post_type=app_release&searchtype=apk&s=ru.oneme.app",
        httpx.Response(200, text="<html>no results</html>"),
    )

    with pytest.raises(ArtifactSourceExhausted) as info:
        _acquirer(config, catalog).acquire()

    err = info.value
    assert [a.source for a in err.attempts] == ["rustore", "apkmirror", "apkpure", "apkeep"]
    assert [a.skipped for a in err.attempts] == [False, False, False, True]
    assert all(not a.ok for a in err.attempts)

    preserved = config.apk_dir / ".work-rustore" / "download.bin"
    assert preserved in err.preserved
    assert preserved.read_text() == "<html>captcha</html>"
    assert str(preserved) in str(err)
    assert not config.apk_path.exists()


def test_failed_metadata_lookup_is_not_fatal(config) -> None:
    catalog = Catalog()
    catalog.route(
        "GET",
        "https://backapi.rustore.ru/applicationData/overallInfo/ru.oneme.app",
        httpx.Response(200, json={"code": "ERROR", "message": "app not found"}),
    )
    assert _acquirer(config, catalog).check_remote_version() is None


def test_download_link_without_url_fails_the_source(config) -> None:
    catalog = Catalog()
    catalog.route("POST", DOWNLOAD_LINK, httpx.Response(200, json={"code": "OK", "body": {}}))
    with pytest.raises(ArtifactSourceExhausted) as info:
        _acquirer(config, catalog).acquire()
    assert "apkUrl" in info.value.attempts[0].error


def test_supplied_apk_needs_no_network(config, tmp_path: Path) -> None:
    catalog = Catalog()
    apk = write_apk(tmp_path / "downloads" / "max.apk")

    artifact = _acquirer(config, catalog).use_supplied(apk)

    assert artifact.source == "local"
    assert artifact.path == apk
    assert catalog.requests == []


def test_supplied_file_must_be_an_apk(config, tmp_path: Path) -> None:
    acquirer = _acquirer(config, Catalog())
    with pytest.raises(ArtifactInvalid):
        acquirer.use_supplied(tmp_path / "absent.apk")
    bogus = tmp_path / "bogus.apk"
    bogus.write_text("text")
    with pytest.raises(ArtifactInvalid):
        acquirer.use_supplied(bogus)


def test_sidecar_round_trip_tolerates_garbage(config, tmp_path: Path) -> None:
    apk = write_apk(tmp_path / "a.apk")
    artifact = ArtifactVerifier().inspect(apk, source="apkpure")
    write_sidecar(artifact.with_version(name="1.0", code=10))
    assert json.loads(sidecar_path(apk).read_text())["source"] == "apkpure"

    sidecar_path(apk).write_text("[1, 2]")
    assert read_sidecar(apk) == {}
