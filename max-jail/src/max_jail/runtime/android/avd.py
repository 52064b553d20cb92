"""Virtual device (AVD) lifecycle.

Device states are the product of {absent, present-compatible,
present-incompatible} and {stopped, running}. `ensure()` moves any of them to
present-compatible; `start()` moves stopped to running (adopting an emulator
that is already up); `wait_until_ready()` is the bounded boot protocol.

Readiness:
  NOT_STARTED -> BOOTING -> BOOTED | TIMED_OUT  (the last two are terminal)
"""

from __future__ import annotations

import configparser
import enum
import logging
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

import psutil

from max_jail.config import JailConfig
from max_jail.errors import DeviceArchitectureMismatch, DeviceStartFailure
from max_jail.runtime.android.controller import AndroidController, AndroidControllerError
from max_jail.runtime.tools import Runner, run_tool

logger = logging.getLogger(__name__)

_HOST_ARCH = {
    "arm64": "arm64-v8a",
    "aarch64": "arm64-v8a",
    "x86_64": "x86_64",
    "amd64": "x86_64",
}


class ReadinessState(str, enum.Enum):
    NOT_STARTED = "not_started"
    BOOTING = "booting"
    BOOTED = "booted"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (ReadinessState.BOOTED, ReadinessState.TIMED_OUT)


def host_architecture(machine: str) -> str:
    """Map `platform.machine()` to a system-image ABI (x86_64 by default)."""

    return _HOST_ARCH.get(machine.strip().lower(), "x86_64")


@dataclass
class VirtualDeviceDescriptor:
    name: str
    target_architecture: str
    exists: bool = False
    running_pid: Optional[int] = None
    readiness: ReadinessState = ReadinessState.NOT_STARTED

    @classmethod
    def for_config(cls, config: JailConfig) -> "VirtualDeviceDescriptor":
        arch = config.system_image_arch or host_architecture(config.host_machine)
        return cls(name=config.avd_name, target_architecture=arch)


def parse_avd_names(txt: str) -> List[str]:
    """Parse `avdmanager list avd` output, compact (`-c`) or verbose."""

    names: List[str] = []
    for raw in txt.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("Name:"):
            name = line[len("Name:") :].strip()
        elif ":" in line or " " in line or line.startswith(("-", "Available", "Parsing")):
            continue
        else:
            name = line
        if name and name not in names:
            names.append(name)
    return names


def _matches_emulator(cmdline: Iterable[str], name: str) -> bool:
    joined = " ".join(str(part) for part in cmdline)
    return re.search(rf"emulator.*(?:-avd\s+|@){re.escape(name)}(?:\s|$)", joined) is not None


class VirtualDeviceManager:
    def __init__(
        self,
        config: JailConfig,
        *,
        controller: AndroidController,
        runner: Runner = run_tool,
        popen: Callable[..., Any] = subprocess.Popen,
        process_iter: Callable[..., Iterable[Any]] = psutil.process_iter,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.controller = controller
        self._runner = runner
        self._popen = popen
        self._process_iter = process_iter
        self._clock = clock
        self._sleep = sleep
        self._process: Optional[Any] = None

    # ------------------------------------------------------------ descriptors

    def system_image(self, arch: str) -> str:
        return f"system-images;android-{self.config.api_level};{self.config.image_variant};{arch}"

    def _avdmanager(self, *args: str, input_text: Optional[str] = None):
        return self._runner(
            [str(self.config.avdmanager_path), *args],
            env=self.config.subprocess_env(),
            timeout_s=300,
            input_text=input_text,
        )

    def list_devices(self) -> List[str]:
        res = self._avdmanager("list", "avd", "-c")
        if res.ok() and res.stdout.strip():
            return parse_avd_names(res.stdout)
        # Older avdmanager builds lack -c.
        res = self._avdmanager("list", "avd")
        return parse_avd_names(res.stdout) if res.ok() else []

    def exists(self, name: str) -> bool:
        return name in self.list_devices()

    def config_ini(self, name: str) -> Path:
        return self.config.avd_home / f"{name}.avd" / "config.ini"

    def recorded_architecture(self, name: str) -> Optional[str]:
        """`abi.type` from the AVD's config.ini, or None when unreadable."""

        path = self.config_ini(name)
        if not path.is_file():
            return None
        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read_string("[avd]\n" + path.read_text(encoding="utf-8", errors="replace"))
        except configparser.Error as e:
            logger.debug("cannot parse %s: %s", path, e)
            return None
        value = parser.get("avd", "abi.type", fallback="").strip()
        return value or None

    def check_architecture(self, descriptor: VirtualDeviceDescriptor) -> None:
        recorded = self.recorded_architecture(descriptor.name)
        if recorded is not None and recorded != descriptor.target_architecture:
            raise DeviceArchitectureMismatch(
                descriptor.name, recorded, descriptor.target_architecture
            )

    def create(self, descriptor: VirtualDeviceDescriptor) -> None:
        image = self.system_image(descriptor.target_architecture)
        logger.info("Creating AVD %r (%s)", descriptor.name, image)
        res = self._avdmanager(
            "create",
            "avd",
            "--name",
            descriptor.name,
            "--package",
            image,
            "--device",
            self.config.device_profile,
            "--force",
            # "Do you wish to create a custom hardware profile?"
            input_text="no\n",
        )
        logger.debug("avdmanager create output:\n%s", res.output)
        if not res.ok():
            raise DeviceStartFailure(
                f"failed to create AVD {descriptor.name!r} (rc={res.returncode}); "
                f"is {image} installed?"
            )
        descriptor.exists = True

    def delete(self, name: str) -> None:
        logger.info("Deleting AVD %r", name)
        res = self._avdmanager("delete", "avd", "-n", name)
        if not res.ok():
            logger.warning("avdmanager delete failed (rc=%s): %s", res.returncode, res.output[:300])

    def ensure(self, descriptor: VirtualDeviceDescriptor) -> VirtualDeviceDescriptor:
        """Make the descriptor present and compatible with the host."""

        if not self.exists(descriptor.name):
            self.create(descriptor)
            return descriptor

        descriptor.exists = True
        try:
            self.check_architecture(descriptor)
        except DeviceArchitectureMismatch as e:
            logger.warning("%s; recreating", e)
            self.stop(descriptor)
            self.delete(descriptor.name)
            descriptor.exists = False
            self.create(descriptor)
            return descriptor

        logger.info("AVD %r already exists", descriptor.name)
        return descriptor

    # -------------------------------------------------------------- processes

    def running_processes(self, name: str) -> List[Any]:
        """Emulator processes whose command line names this AVD."""

        found: List[Any] = []
        for proc in self._process_iter(["pid", "name", "cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
                if _matches_emulator(cmdline, name):
                    found.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    def start(self, descriptor: VirtualDeviceDescriptor) -> int:
        running = self.running_processes(descriptor.name)
        if running:
            pid = int(running[0].pid)
            logger.info("Emulator already running (PID %s)", pid)
            descriptor.running_pid = pid
            return pid

        cmd = [str(self.config.emulator_path), "-avd", descriptor.name, "-no-snapshot-save"]
        logger.info("Starting emulator: %s", " ".join(cmd))
        try:
            proc = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=self.config.subprocess_env(),
                start_new_session=True,
            )
        except OSError as e:
            raise DeviceStartFailure(f"cannot execute emulator: {e}") from e

        self._sleep(self.config.start_grace_s)
        rc = proc.poll()
        if rc is not None:
            raise DeviceStartFailure(f"emulator exited right after start (rc={rc})")

        self._process = proc
        descriptor.running_pid = int(proc.pid)
        logger.info("Emulator started with PID %s", proc.pid)
        return descriptor.running_pid

    def wait_until_ready(
        self, descriptor: VirtualDeviceDescriptor, timeout_s: Optional[float] = None
    ) -> ReadinessState:
        """Block until `sys.boot_completed` is 1 or the bound elapses.

        The adb connection wait has no bound of its own; the boot poll is
        bounded by `timeout_s` (default `config.boot_timeout_s`). Each poll and
        each sleep is clamped to the time remaining, so the call returns at
        most one poll interval late even when `getprop` hangs.
        """

        if descriptor.readiness.terminal:
            return descriptor.readiness

        bound = self.config.boot_timeout_s if timeout_s is None else float(timeout_s)
        interval = self.config.boot_poll_interval_s
        progress_every = self.config.boot_progress_every_s

        descriptor.readiness = ReadinessState.BOOTING
        logger.info("Waiting for ADB connection...")
        try:
            self.controller.wait_for_device()
        except AndroidControllerError as e:
            raise DeviceStartFailure(f"adb wait-for-device failed: {e}") from e

        logger.info("Waiting for Android to boot...")
        started = self._clock()
        next_progress = progress_every
        while True:
            remaining = bound - (self._clock() - started)
            if remaining <= 0:
                return self._timed_out(descriptor, bound)

            # A hung `adb shell` must not carry the poll past the bound.
            if self.controller.boot_completed(timeout_s=min(interval, remaining)):
                self._sleep(self.config.boot_settle_s)
                descriptor.readiness = ReadinessState.BOOTED
                logger.info("Emulator is ready")
                return descriptor.readiness

            elapsed = self._clock() - started
            if elapsed >= bound:
                return self._timed_out(descriptor, bound)

            self._sleep(min(interval, bound - elapsed))
            elapsed = self._clock() - started
            if elapsed >= next_progress:
                logger.info("Still waiting for boot... (%ds)", int(elapsed))
                next_progress += progress_every

    def _timed_out(self, descriptor: VirtualDeviceDescriptor, bound: float) -> ReadinessState:
        descriptor.readiness = ReadinessState.TIMED_OUT
        logger.error("Emulator failed to boot within %ss", int(bound))
        return descriptor.readiness

    def stop(self, descriptor: VirtualDeviceDescriptor) -> None:
        """Terminate the emulator, then kill it if it outlives the grace period."""

        grace = self.config.stop_grace_s
        stopped = set()
        for proc in self.running_processes(descriptor.name):
            logger.info("Stopping emulator PID %s", proc.pid)
            stopped.add(int(proc.pid))
            try:
                proc.terminate()
                proc.wait(timeout=grace)
            except psutil.TimeoutExpired:
                logger.warning("Emulator PID %s unresponsive, killing", proc.pid)
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            except psutil.NoSuchProcess:
                continue

        own = self._process
        if own is not None and own.poll() is None and int(own.pid) not in stopped:
            logger.info("Stopping emulator PID %s", own.pid)
            own.terminate()
            try:
                own.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                logger.warning("Emulator PID %s unresponsive, killing", own.pid)
                own.kill()

        self._process = None
        descriptor.running_pid = None
