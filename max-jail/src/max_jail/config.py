"""Runtime configuration.

All paths, names and timing knobs live in a single frozen `JailConfig` that is
built once at startup (`JailConfig.from_env`) and handed to every component.
Components never consult `os.environ` themselves; child tools receive the
environment produced by `JailConfig.subprocess_env()`.

An optional YAML overrides file may change any field listed in
`OVERRIDES_SCHEMA`; it is validated before use.
"""

from __future__ import annotations

import json
import os
import platform
import sys
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from jsonschema import Draft202012Validator


class ConfigError(RuntimeError):
    pass


DEFAULT_PACKAGE = "ru.oneme.app"
KNOWN_PACKAGES = (
    "ru.oneme.app",
    "ru.max.messenger",
    "com.max.messenger",
    "ru.vk.max",
    "ru.max",
    "com.max",
)
NAME_FRAGMENTS = ("oneme", "max")

CMDLINE_TOOLS_BUILD = "11076708"
_CMDLINE_TOOLS_PLATFORM = {"darwin": "mac", "linux": "linux", "win32": "win"}

_STR = {"type": "string", "minLength": 1}
_NUM = {"type": "number", "exclusiveMinimum": 0}
_STR_LIST = {"type": "array", "items": _STR}

OVERRIDES_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "cache_root": _STR,
        "sdk_root": _STR,
        "avd_name": _STR,
        "package_override": _STR,
        "default_package": _STR,
        "known_packages": _STR_LIST,
        "name_fragments": _STR_LIST,
        "serial": _STR,
        "system_image_arch": {"enum": ["x86_64", "arm64-v8a"]},
        "api_level": {"type": "integer", "minimum": 21},
        "image_variant": _STR,
        "device_profile": _STR,
        "build_tools_version": _STR,
        "boot_timeout_s": _NUM,
        "boot_poll_interval_s": _NUM,
        "boot_progress_every_s": _NUM,
        "boot_settle_s": {"type": "number", "minimum": 0},
        "install_settle_s": {"type": "number", "minimum": 0},
        "install_timeout_s": _NUM,
        "start_grace_s": {"type": "number", "minimum": 0},
        "stop_grace_s": {"type": "number", "minimum": 0},
        "http_timeout_s": _NUM,
        "http_retries": {"type": "integer", "minimum": 1},
    },
}

_PATH_FIELDS = {"cache_root", "sdk_root"}
_TUPLE_FIELDS = {"known_packages", "name_fragments"}


def default_cache_root(environ: Mapping[str, str]) -> Path:
    explicit = environ.get("MAX_IN_JAIL_CACHE")
    if explicit:
        return Path(explicit).expanduser()
    home = environ.get("HOME") or str(Path.home())
    return Path(home) / ".cache" / "max-in-jail"


@dataclass(frozen=True)
class JailConfig:
    cache_root: Path
    sdk_root: Path
    avd_name: str = "max_messenger_avd"
    package_override: Optional[str] = None
    default_package: str = DEFAULT_PACKAGE
    known_packages: Tuple[str, ...] = KNOWN_PACKAGES
    name_fragments: Tuple[str, ...] = NAME_FRAGMENTS
    serial: Optional[str] = None
    host_machine: str = field(default_factory=platform.machine)
    host_platform: str = sys.platform
    system_image_arch: Optional[str] = None
    api_level: int = 33
    image_variant: str = "google_apis"
    device_profile: str = "pixel_5"
    build_tools_version: str = "33.0.0"
    boot_timeout_s: float = 300.0
    boot_poll_interval_s: float = 2.0
    boot_progress_every_s: float = 10.0
    boot_settle_s: float = 5.0
    install_settle_s: float = 3.0
    install_timeout_s: float = 600.0
    start_grace_s: float = 2.0
    stop_grace_s: float = 2.0
    http_timeout_s: float = 30.0
    http_retries: int = 3
    google_email: Optional[str] = None
    google_token: Optional[str] = None
    base_env: Mapping[str, str] = field(default_factory=dict, repr=False, compare=False)

    # ------------------------------------------------------------------ paths

    @property
    def apk_dir(self) -> Path:
        return self.cache_root / "apk"

    @property
    def apk_path(self) -> Path:
        return self.apk_dir / "max-messenger.apk"

    @property
    def avd_home(self) -> Path:
        return self.cache_root / "avd"

    @property
    def log_file(self) -> Path:
        return self.cache_root / "logs" / "setup.log"

    @property
    def cmdline_tools_dir(self) -> Path:
        return self.sdk_root / "cmdline-tools" / "latest"

    @property
    def sdkmanager_path(self) -> Path:
        return self.cmdline_tools_dir / "bin" / "sdkmanager"

    @property
    def avdmanager_path(self) -> Path:
        return self.cmdline_tools_dir / "bin" / "avdmanager"

    @property
    def emulator_path(self) -> Path:
        return self.sdk_root / "emulator" / "emulator"

    @property
    def adb_path(self) -> Path:
        return self.sdk_root / "platform-tools" / "adb"

    @property
    def build_tools_root(self) -> Path:
        return self.sdk_root / "build-tools"

    @property
    def cmdline_tools_url(self) -> str:
        flavor = _CMDLINE_TOOLS_PLATFORM.get(self.host_platform, "linux")
        return (
            "https://dl.google.com/android/repository/"
            f"commandlinetools-{flavor}-{CMDLINE_TOOLS_BUILD}_latest.zip"
        )

    def ensure_dirs(self) -> None:
        for path in (self.cache_root, self.sdk_root, self.apk_dir, self.avd_home):
            path.mkdir(parents=True, exist_ok=True)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------ environment

    @property
    def has_google_credentials(self) -> bool:
        return bool(self.google_email and self.google_token)

    def search_path(self) -> str:
        sdk_dirs = [
            self.cmdline_tools_dir / "bin",
            self.sdk_root / "platform-tools",
            self.sdk_root / "emulator",
        ]
        java_home = self.base_env.get("JAVA_HOME")
        if java_home:
            sdk_dirs.insert(0, Path(java_home) / "bin")
        parts = [str(p) for p in sdk_dirs]
        inherited = self.base_env.get("PATH", os.defpath)
        if inherited:
            parts.append(inherited)
        return os.pathsep.join(parts)

    def subprocess_env(self) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(
            {
                "ANDROID_SDK_ROOT": str(self.sdk_root),
                "ANDROID_HOME": str(self.sdk_root),
                "ANDROID_AVD_HOME": str(self.avd_home),
                "PATH": self.search_path(),
            }
        )
        return env

    # ------------------------------------------------------------ construction

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        cache_root: Optional[Path] = None,
        overrides_path: Optional[Path] = None,
    ) -> "JailConfig":
        """Build the configuration from a snapshot of the process environment."""

        env = dict(os.environ if environ is None else environ)
        root = Path(cache_root).expanduser() if cache_root else default_cache_root(env)
        sdk_root = Path(env["ANDROID_SDK_ROOT"]) if env.get("ANDROID_SDK_ROOT") else None

        cfg = cls(
            cache_root=root,
            sdk_root=sdk_root or root / "android-sdk",
            package_override=(env.get("MAX_PACKAGE_NAME") or "").strip() or None,
            serial=(env.get("ANDROID_SERIAL") or "").strip() or None,
            system_image_arch=(env.get("ANDROID_SYSTEM_IMAGE_ARCH") or "").strip() or None,
            google_email=env.get("GOOGLE_EMAIL") or None,
            google_token=env.get("GOOGLE_PASSWORD") or None,
            base_env=env,
        )

        if overrides_path is None:
            candidate = root / "config.yaml"
            overrides_path = candidate if candidate.is_file() else None
        if overrides_path is not None:
            cfg = cfg.with_overrides(load_overrides(overrides_path))
        return cfg

    def with_overrides(self, overrides: Mapping[str, Any]) -> "JailConfig":
        known = {f.name for f in fields(self)}
        changes: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigError(f"unknown config key: {key}")
            if key in _PATH_FIELDS:
                value = Path(str(value)).expanduser()
            elif key in _TUPLE_FIELDS:
                value = tuple(str(v) for v in value)
            changes[key] = value
        if "cache_root" in changes and "sdk_root" not in changes:
            if self.sdk_root == self.cache_root / "android-sdk":
                changes["sdk_root"] = changes["cache_root"] / "android-sdk"
        return replace(self, **changes)


def load_overrides(path: Path) -> Dict[str, Any]:
    """Load and validate a YAML/JSON overrides file.

    The top level must be an object; unknown keys are rejected.
    """

    if not path.exists():
        raise FileNotFoundError(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file must contain a mapping: {path}")

    validator = Draft202012Validator(OVERRIDES_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        msgs = []
        for e in errors[:20]:
            loc = "/".join(str(p) for p in e.path) or "<root>"
            msgs.append(f"- {path.name}:{loc}: {e.message}")
        raise ConfigError("\n".join(msgs))
    return data
