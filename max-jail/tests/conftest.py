from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_src_on_path() -> None:
    project_root = Path(__file__).resolve().parents[1]
    src_str = str(project_root / "src")
    if src_str not in sys.path:
        sys.path.insert(0, src_str)

    # Shared fakes (fake device, fake tool runner, APK builders) live under tests/unit.
    unit_root = Path(__file__).resolve().parent / "unit"
    unit_root_str = str(unit_root)
    if unit_root.is_dir() and unit_root_str not in sys.path:
        sys.path.insert(0, unit_root_str)


_ensure_src_on_path()


@pytest.fixture
def config(tmp_path):
    from max_jail.config import JailConfig

    return JailConfig(
        cache_root=tmp_path / "cache",
        sdk_root=tmp_path / "cache" / "android-sdk",
        host_machine="arm64",
        host_platform="darwin",
        boot_settle_s=0,
        install_settle_s=0,
        start_grace_s=0,
        stop_grace_s=0,
        base_env={"PATH": "", "HOME": str(tmp_path)},
    )
