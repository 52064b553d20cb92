from __future__ import annotations

import os
import signal
import stat
import subprocess
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from catalog_fakes import CDN_URL, Catalog
from jail_fakes import FakeAvdManager, FakeClock, FakeDevice, FakePopen, FakeRunner, write_apk
from max_jail.artifacts.acquirer import ArtifactAcquirer
from max_jail.artifacts.verifier import ArtifactVerifier
from max_jail.errors import ToolNonfunctional
from max_jail.pipeline import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    Pipeline,
    RunMode,
    format_diagnostic,
    uninstall,
)
from max_jail.runtime.android.avd import ReadinessState, VirtualDeviceManager
from max_jail.runtime.android.controller import AndroidControllerError
from max_jail.runtime.android.deploy import DeploymentManager

RESOLVED = (
    "priority=0 preferredOrder=0 match=0x108000 specificIndex=-1 isDefault=false\n"
    "ru.oneme.app/ru.oneme.app.ui.MainActivity\n"
)


class StubSdk:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.arches: List[str] = []
        self.error = error

    def ensure(self, arch: str) -> None:
        self.arches.append(arch)
        if self.error is not None:
            raise self.error


class Harness:
    """Real acquirer, device and deployment managers over fake tools."""

    def __init__(
        self,
        config,
        tmp_path: Path,
        *,
        mode: RunMode = RunMode.DETACHED,
        device: Optional[FakeDevice] = None,
        catalog: Optional[Catalog] = None,
        sdk: Optional[StubSdk] = None,
        supplied_apk: Optional[Path] = None,
        with_java: bool = True,
    ) -> None:
        bin_dir = tmp_path / "host-bin"
        bin_dir.mkdir(exist_ok=True)
        if with_java:
            java = bin_dir / "java"
            java.write_text("#!/bin/sh\n")
            java.chmod(java.stat().st_mode | stat.S_IXUSR)
        self.config = replace(config, base_env={"PATH": str(bin_dir), "HOME": str(tmp_path)})

        self.device = device or FakeDevice(install_as="ru.oneme.app", resolve_output=RESOLVED)
        self.catalog = catalog or Catalog()
        self.sdk = sdk or StubSdk()
        self.avdmanager = FakeAvdManager(self.config.avd_home)
        self.popen = FakePopen()
        self.clock = FakeClock()
        self.host = FakeRunner(lambda cmd, _input: ('openjdk version "17.0.9"', 0))
        self.log_lines: List[str] = []

        self.devices = VirtualDeviceManager(
            self.config,
            controller=self.device,
            runner=self.avdmanager,
            popen=self.popen,
            process_iter=lambda *args, **kwargs: [],
            clock=self.clock,
            sleep=self.clock.sleep,
        )
        self.pipeline = Pipeline(
            self.config,
            mode=mode,
            sdk=self.sdk,
            acquirer=ArtifactAcquirer(
                self.config, verifier=ArtifactVerifier(), client_factory=self.catalog.client
            ),
            devices=self.devices,
            deployer=DeploymentManager(self.config, controller=self.device, sleep=lambda s: None),
            controller=self.device,
            supplied_apk=supplied_apk,
            runner=self.host,
            log_sink=self.log_lines.append,
        )

    def run(self):
        return self.pipeline.run()


def test_detached_run_launches_and_leaves_emulator_running(config, tmp_path: Path) -> None:
    h = Harness(config, tmp_path)
    result = h.run()

    assert result.exit_code == EXIT_OK
    assert result.facts.completed == [
        "prerequisites",
        "sdk",
        "acquire",
        "device",
        "boot",
        "install",
        "launch",
    ]
    assert h.sdk.arches == ["arm64-v8a"]
    assert h.avdmanager.created == ["max_messenger_avd"]
    assert result.facts.artifact.version_code == 251900
    assert result.facts.identity == "ru.oneme.app"
    assert result.facts.readiness is ReadinessState.BOOTED
    assert h.device.started == ["ru.oneme.app/ru.oneme.app.ui.MainActivity"]
    assert result.facts.last_good == "ru.oneme.app/ru.oneme.app.ui.MainActivity launched"
    assert not h.popen.terminated


def test_second_run_reuses_everything(config, tmp_path: Path) -> None:
    Harness(config, tmp_path).run()

    h = Harness(config, tmp_path)
    h.avdmanager.add("max_messenger_avd", "arm64-v8a")
    h.device.enabled.append("ru.oneme.app")
    result = h.run()

    assert result.ok
    assert h.avdmanager.created == []
    assert not any(str(r.url) == CDN_URL for r in h.catalog.requests)
    assert h.device.installs[0][1] is True


def test_acquire_failure_reports_acquire_stage(config, tmp_path: Path) -> None:
    result = Harness(config, tmp_path, catalog=_all_down()).run()

    assert result.exit_code == EXIT_FAILURE
    assert result.error.stage == "acquire"
    assert "all APK sources failed" in str(result.error)
    assert result.facts.last_good.startswith("Android SDK ready")


def _all_down() -> Catalog:
    catalog = Catalog()
    catalog.routes.clear()
    return catalog


def test_failure_before_device_stage_has_no_device_side_effects(config, tmp_path: Path) -> None:
    h = Harness(config, tmp_path, catalog=_all_down())
    result = h.run()

    assert result.exit_code == EXIT_FAILURE
    assert h.avdmanager.calls == []
    assert h.popen.calls == []
    assert h.device.installs == []


def test_missing_java_stops_before_sdk(config, tmp_path: Path) -> None:
    h = Harness(config, tmp_path, with_java=False)
    result = h.run()

    assert result.exit_code == EXIT_FAILURE
    assert result.error.stage == "prerequisites"
    assert h.sdk.arches == []
    assert result.facts.last_good == "nothing completed yet"


def test_sdk_failure_reports_sdk_stage(config, tmp_path: Path) -> None:
    sdk = StubSdk(ToolNonfunctional("sdkmanager", "rc=1", stage="sdk"))
    result = Harness(config, tmp_path, sdk=sdk).run()

    assert result.error.stage == "sdk"
    assert "java available" in result.facts.last_good


def test_boot_timeout_is_reported(config, tmp_path: Path) -> None:
    cfg = replace(config, boot_timeout_s=10, boot_poll_interval_s=2)
    h = Harness(cfg, tmp_path, device=FakeDevice(boot_after_polls=10**6))
    result = h.run()

    assert result.exit_code == EXIT_FAILURE
    assert result.error.stage == "boot"
    assert result.facts.readiness is ReadinessState.TIMED_OUT
    assert "10s" in format_diagnostic(result.error, result.facts)
    assert not h.popen.terminated


def test_attached_failure_tears_down(config, tmp_path: Path) -> None:
    cfg = replace(config, boot_timeout_s=4, boot_poll_interval_s=2)
    h = Harness(
        cfg, tmp_path, mode=RunMode.ATTACHED, device=FakeDevice(boot_after_polls=10**6)
    )
    result = h.run()

    assert result.exit_code == EXIT_FAILURE
    assert h.popen.terminated


def test_attached_interrupt_stops_emulator(config, tmp_path: Path) -> None:
    device = FakeDevice(
        install_as="ru.oneme.app",
        resolve_output=RESOLVED,
        logcat_lines=["I/ActivityManager: Start proc ru.oneme.app"],
        interrupt_logcat=True,
    )
    h = Harness(config, tmp_path, mode=RunMode.ATTACHED, device=device)
    result = h.run()

    assert result.exit_code == EXIT_INTERRUPTED
    assert h.log_lines == ["I/ActivityManager: Start proc ru.oneme.app"]
    assert h.popen.terminated


def test_attached_log_end_keeps_emulator(config, tmp_path: Path) -> None:
    device = FakeDevice(install_as="ru.oneme.app", logcat_lines=["line"])
    h = Harness(config, tmp_path, mode=RunMode.ATTACHED, device=device)
    result = h.run()

    assert result.ok
    assert not h.popen.terminated


class BrokenRegistry(FakeDevice):
    def list_packages(self, *flags: str) -> List[str]:
        raise AndroidControllerError("pm list packages failed (rc=255): device offline")


def test_adb_errors_are_attributed_to_the_running_stage(config, tmp_path: Path) -> None:
    result = Harness(config, tmp_path, device=BrokenRegistry()).run()

    assert result.exit_code == EXIT_FAILURE
    assert result.error.stage == "install"
    assert "device offline" in str(result.error)
    assert result.facts.last_good == "device booted"


def test_supplied_apk_skips_the_catalog(config, tmp_path: Path) -> None:
    apk = write_apk(tmp_path / "supplied" / "max.apk")
    h = Harness(config, tmp_path, supplied_apk=apk)
    result = h.run()

    assert result.ok
    assert h.catalog.requests == []
    assert h.device.installs[0][0] == apk


def test_uninstall_removes_cache_root(config, tmp_path: Path) -> None:
    h = Harness(config, tmp_path)
    h.run()
    assert h.config.cache_root.exists()

    uninstall(h.config, h.devices)

    assert not h.config.cache_root.exists()
    assert h.popen.terminated


class HangingInstall(FakeDevice):
    def install(self, apk, *, replace, timeout_s=None):
        raise subprocess.TimeoutExpired(["adb", "install", str(apk)], timeout_s)


def test_tool_timeouts_fail_the_running_stage(config, tmp_path: Path) -> None:
    result = Harness(config, tmp_path, device=HangingInstall()).run()

    assert result.exit_code == EXIT_FAILURE
    assert result.error.stage == "install"
    assert "timed out after 600.0s" in str(result.error)


class TerminatedWhileFollowingLogs(FakeDevice):
    def follow_logcat(self, sink, *, clear: bool = True) -> int:
        sink("I/ActivityManager: Start proc ru.oneme.app")
        handler = signal.getsignal(signal.SIGTERM)
        assert callable(handler), "SIGTERM would end the interpreter here"
        os.kill(os.getpid(), signal.SIGTERM)
        time.sleep(5)
        raise AssertionError("SIGTERM was not delivered")


def test_attached_sigterm_stops_emulator(config, tmp_path: Path) -> None:
    before = signal.getsignal(signal.SIGTERM)
    device = TerminatedWhileFollowingLogs(install_as="ru.oneme.app", resolve_output=RESOLVED)
    h = Harness(config, tmp_path, mode=RunMode.ATTACHED, device=device)

    result = h.run()

    assert result.exit_code == EXIT_INTERRUPTED
    assert h.popen.terminated
    assert signal.getsignal(signal.SIGTERM) == before


def test_detached_run_leaves_sigterm_alone(config, tmp_path: Path) -> None:
    seen = []

    class Recording(FakeDevice):
        def boot_completed(self, *, timeout_s=None) -> bool:
            seen.append(signal.getsignal(signal.SIGTERM))
            return True

    before = signal.getsignal(signal.SIGTERM)
    device = Recording(install_as="ru.oneme.app", resolve_output=RESOLVED)
    Harness(config, tmp_path, device=device).run()
    assert seen == [before]
