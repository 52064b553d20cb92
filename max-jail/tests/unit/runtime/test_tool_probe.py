from __future__ import annotations

import stat
import subprocess
from pathlib import Path

import pytest

from jail_fakes import FakeRunner
from max_jail.errors import ToolMissing, ToolNonfunctional
from max_jail.runtime.tools import find_build_tool, probe, require, run_tool


def _executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def test_probe_reports_absent_tool_without_running_anything(tmp_path: Path) -> None:
    runner = FakeRunner()
    avail = probe("java", env={"PATH": str(tmp_path)}, runner=runner)
    assert not avail.present
    assert not avail.functional
    assert runner.calls == []


def test_probe_matches_liveness_pattern(tmp_path: Path) -> None:
    java = _executable(tmp_path / "bin" / "java")
    runner = FakeRunner(lambda cmd, _: ('openjdk version "17.0.9" 2023-10-17', 0))

    avail = probe("java", env={"PATH": str(java.parent)}, runner=runner)

    assert avail.usable()
    assert avail.path == str(java)
    assert runner.calls[0].cmd == [str(java), "-version"]


def test_present_but_broken_tool_is_not_functional(tmp_path: Path) -> None:
    sdkmanager = _executable(tmp_path / "sdkmanager")
    runner = FakeRunner(
        lambda cmd, _: ("ERROR: JAVA_HOME is set to an invalid directory", 1)
    )

    avail = probe("sdkmanager", path=sdkmanager, runner=runner)

    assert avail.present
    assert not avail.functional
    assert "JAVA_HOME" in avail.detail


def test_probe_is_never_cached(tmp_path: Path) -> None:
    adb = _executable(tmp_path / "adb")
    runner = FakeRunner(lambda cmd, _: ("Android Debug Bridge version 1.0.41", 0))
    probe("adb", path=adb, runner=runner)
    probe("adb", path=adb, runner=runner)
    assert len(runner.calls) == 2


def test_require_raises_by_failure_kind(tmp_path: Path) -> None:
    with pytest.raises(ToolMissing) as missing:
        require("java", stage="prerequisites", env={"PATH": str(tmp_path)}, runner=FakeRunner())
    assert missing.value.stage == "prerequisites"

    emulator = _executable(tmp_path / "emulator")
    with pytest.raises(ToolNonfunctional) as broken:
        require("emulator", stage="sdk", path=emulator, runner=FakeRunner(lambda c, _: ("", 1)))
    assert broken.value.stage == "sdk"


def test_liveness_timeout_counts_as_nonfunctional(tmp_path: Path) -> None:
    adb = _executable(tmp_path / "adb")

    def runner(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, 60)

    avail = probe("adb", path=adb, runner=runner)
    assert avail.present and not avail.functional


def test_run_tool_maps_missing_executable_to_127(monkeypatch) -> None:
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)
    res = run_tool(["definitely-not-installed"])
    assert res.returncode == 127
    assert not res.ok()


def test_find_build_tool_prefers_newest_version(tmp_path: Path) -> None:
    root = tmp_path / "build-tools"
    _executable(root / "30.0.3" / "aapt2")
    newest = _executable(root / "33.0.0" / "aapt2")
    (root / "34.0.0-rc1").mkdir(parents=True)

    assert find_build_tool(root, "aapt2") == newest
    assert find_build_tool(root, "aapt") is None
    assert find_build_tool(tmp_path / "missing", "aapt2") is None
