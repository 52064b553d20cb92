"""Android controller utilities.

A minimal adb wrapper used by the device and deployment managers. It
standardizes:
  * command construction (serial selection, shell quoting, timeouts)
  * package registry queries (enabled and disabled listings)
  * install/enable/start commands whose raw output is kept for diagnostics

Notes
-----
* All operations are intended for *emulator* use only.
* `wait_for_device()` deliberately has no timeout; adb retries on its own.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class AndroidControllerError(RuntimeError):
    """Raised when an adb operation fails."""


@dataclass(frozen=True)
class AdbResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return ((self.stdout or "") + "\n" + (self.stderr or "")).strip()


def parse_component(component: str) -> Tuple[Optional[str], Optional[str]]:
    """Parse Android component string 'pkg/.Act' or 'pkg/pkg.Act'."""

    component = str(component).strip()
    if "/" not in component:
        return None, None
    pkg, activity = component.split("/", 1)
    pkg = pkg.strip()
    activity = activity.strip()
    if not pkg or not activity:
        return None, None
    if activity.startswith("."):
        activity = pkg + activity
    return pkg, activity


def parse_package_list(txt: str) -> List[str]:
    """Parse `pm list packages` output into package names (order kept)."""

    names: List[str] = []
    for raw in txt.splitlines():
        line = raw.strip()
        if not line.startswith("package:"):
            continue
        name = line[len("package:") :].strip()
        # `pm list packages -f` prints package:/path/base.apk=name
        if "=" in name:
            name = name.rsplit("=", 1)[1]
        if name and name not in names:
            names.append(name)
    return names


def parse_device_list(txt: str) -> List[str]:
    devices: List[str] = []
    for raw in txt.splitlines():
        line = raw.strip()
        if not line or line.startswith("*") or line.startswith("List of devices attached"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial, state = parts[0], parts[1]
        if state == "device":
            devices.append(serial)
    return devices


class AndroidController:
    """Thin wrapper around adb for registry queries and app control."""

    def __init__(
        self,
        *,
        adb_path: str = "adb",
        serial: Optional[str] = None,
        timeout_s: float = 30.0,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._adb_path = adb_path
        self._serial = serial
        self._timeout_s = timeout_s
        self._env = dict(env) if env is not None else None

    @property
    def serial(self) -> Optional[str]:
        return self._serial

    @property
    def adb_path(self) -> str:
        return self._adb_path

    def _base_cmd(self) -> list[str]:
        cmd = [self._adb_path]
        if self._serial:
            cmd += ["-s", self._serial]
        return cmd

    def adb(
        self,
        *args: str,
        timeout_s: float | None = None,
        check: bool = True,
        unbounded: bool = False,
    ) -> AdbResult:
        """Run an adb command and return stdout/stderr/returncode."""

        cmd = self._base_cmd() + list(args)
        timeout: Optional[float] = None
        if not unbounded:
            timeout = self._timeout_s if timeout_s is None else float(timeout_s)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env,
            )
        except FileNotFoundError as e:
            raise AndroidControllerError(f"adb not found: {self._adb_path}") from e
        result = AdbResult(
            args=cmd,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            returncode=proc.returncode,
        )
        logger.debug("adb rc=%s: %s", result.returncode, " ".join(args))
        if check and not result.ok():
            raise AndroidControllerError(
                f"adb command failed (rc={result.returncode}): {' '.join(cmd)}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def adb_shell(
        self,
        command: str,
        *,
        timeout_s: float | None = None,
        check: bool = True,
    ) -> AdbResult:
        return self.adb("shell", command, timeout_s=timeout_s, check=check)

    def _shell_argv(self, *parts: str, timeout_s: float | None = None) -> AdbResult:
        cmd = " ".join(shlex.quote(str(p)) for p in parts)
        return self.adb_shell(cmd, timeout_s=timeout_s, check=False)

    # ---------------------------------------------------------------- device

    def list_devices(self) -> List[str]:
        res = self.adb("devices", timeout_s=5.0, check=False)
        return parse_device_list(res.output)

    def wait_for_device(self) -> AdbResult:
        return self.adb("wait-for-device", unbounded=True, check=True)

    def getprop(self, name: str, *, timeout_s: float | None = None) -> str:
        res = self._shell_argv("getprop", name, timeout_s=timeout_s)
        return res.stdout.strip() if res.ok() else ""

    def boot_completed(self, *, timeout_s: float = 10.0) -> bool:
        try:
            return self.getprop("sys.boot_completed", timeout_s=timeout_s) == "1"
        except subprocess.TimeoutExpired:
            return False

    def emu_kill(self) -> AdbResult:
        return self.adb("emu", "kill", check=False)

    # -------------------------------------------------------------- packages

    def list_packages(self, *flags: str) -> List[str]:
        """`pm list packages [flags]`; `-e` enabled only, `-d` disabled only."""

        res = self._shell_argv("pm", "list", "packages", *flags)
        if not res.ok():
            raise AndroidControllerError(
                f"pm list packages failed (rc={res.returncode}): {res.output[:500]}"
            )
        return parse_package_list(res.stdout)

    def install(self, apk: Path, *, replace: bool, timeout_s: float | None = None) -> AdbResult:
        args = ["install"]
        if replace:
            args += ["-r", "-d"]
        args.append(str(apk))
        return self.adb(*args, timeout_s=timeout_s, check=False)

    def enable_package(self, package: str) -> AdbResult:
        return self._shell_argv("pm", "enable", package)

    def package_dump(self, package: str) -> AdbResult:
        return self._shell_argv("pm", "dump", package)

    def resolve_launcher_activity(self, package: str) -> AdbResult:
        return self._shell_argv(
            "cmd",
            "package",
            "resolve-activity",
            "--brief",
            "-a",
            "android.intent.action.MAIN",
            "-c",
            "android.intent.category.LAUNCHER",
            package,
        )

    def start_activity(self, component: str) -> AdbResult:
        return self._shell_argv("am", "start", "-n", component)

    def monkey_launch(self, package: str) -> AdbResult:
        return self._shell_argv(
            "monkey", "-p", package, "-c", "android.intent.category.LAUNCHER", "1"
        )

    # ------------------------------------------------------------------- logs

    def follow_logcat(self, sink: Callable[[str], None], *, clear: bool = True) -> int:
        """Stream `adb logcat` lines into `sink` until the process ends."""

        if clear:
            self.adb("logcat", "-c", check=False)
        proc = subprocess.Popen(
            self._base_cmd() + ["logcat"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            env=self._env,
        )
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                sink(line.rstrip("\n"))
        finally:
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
        return proc.returncode if proc.returncode is not None else 0
