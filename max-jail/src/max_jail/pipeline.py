"""Pipeline orchestrator.

Stages run strictly in order; each one is a hard precondition for the next:

  prerequisites -> sdk -> acquire -> device -> boot -> install -> launch

The first failing stage aborts the run. The orchestrator is the only place
that turns exceptions into exit codes and owns the run mode, which decides
whether the emulator is torn down on exit.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from max_jail.artifacts.acquirer import ArtifactAcquirer
from max_jail.artifacts.sources import RemoteVersion
from max_jail.artifacts.verifier import ApkInspector, Artifact, ArtifactVerifier
from max_jail.config import JailConfig
from max_jail.errors import DeviceTimeout, JailError
from max_jail.runtime.android.avd import (
    ReadinessState,
    VirtualDeviceDescriptor,
    VirtualDeviceManager,
)
from max_jail.runtime.android.controller import AndroidController, AndroidControllerError
from max_jail.runtime.android.deploy import DeploymentManager
from max_jail.runtime.sdk import SdkManager
from max_jail.runtime.tools import Runner, require, run_tool

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


class RunMode(str, enum.Enum):
    ATTACHED = "attached"
    DETACHED = "detached"


@dataclass
class PipelineFacts:
    """What the run has established so far, for the failure diagnostic."""

    last_good: str = "nothing completed yet"
    remote_version: Optional[RemoteVersion] = None
    artifact: Optional[Artifact] = None
    descriptor: Optional[VirtualDeviceDescriptor] = None
    identity: Optional[str] = None
    component: Optional[str] = None
    completed: List[str] = field(default_factory=list)

    @property
    def readiness(self) -> ReadinessState:
        if self.descriptor is None:
            return ReadinessState.NOT_STARTED
        return self.descriptor.readiness


@dataclass
class PipelineResult:
    exit_code: int
    mode: RunMode
    facts: PipelineFacts
    error: Optional[JailError] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK


def format_diagnostic(error: JailError, facts: PipelineFacts) -> str:
    lines = [
        f"stage '{error.stage}' failed: {error}",
        f"last known good: {facts.last_good}",
    ]
    return "\n".join(lines)


def _print_line(line: str) -> None:
    print(line, flush=True)


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


@contextlib.contextmanager
def sigterm_as_interrupt() -> Iterator[None]:
    """Deliver SIGTERM as KeyboardInterrupt so `finally` blocks still run."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class Pipeline:
    def __init__(
        self,
        config: JailConfig,
        *,
        mode: RunMode,
        sdk: SdkManager,
        acquirer: ArtifactAcquirer,
        devices: VirtualDeviceManager,
        deployer: DeploymentManager,
        controller: AndroidController,
        supplied_apk: Optional[Path] = None,
        runner: Runner = run_tool,
        log_sink: Callable[[str], None] = _print_line,
    ) -> None:
        self.config = config
        self.mode = mode
        self.sdk = sdk
        self.acquirer = acquirer
        self.devices = devices
        self.deployer = deployer
        self.controller = controller
        self.supplied_apk = supplied_apk
        self._runner = runner
        self._log_sink = log_sink
        self.facts = PipelineFacts(descriptor=VirtualDeviceDescriptor.for_config(config))

    @classmethod
    def from_config(
        cls,
        config: JailConfig,
        *,
        mode: RunMode = RunMode.DETACHED,
        supplied_apk: Optional[Path] = None,
    ) -> "Pipeline":
        env = config.subprocess_env()
        controller = AndroidController(
            adb_path=str(config.adb_path), serial=config.serial, env=env
        )
        verifier = ArtifactVerifier(ApkInspector(config.build_tools_root, env=env))
        return cls(
            config,
            mode=mode,
            sdk=SdkManager(config),
            acquirer=ArtifactAcquirer(config, verifier=verifier),
            devices=VirtualDeviceManager(config, controller=controller),
            deployer=DeploymentManager(config, controller=controller),
            controller=controller,
            supplied_apk=supplied_apk,
        )

    # ------------------------------------------------------------------ stages

    @property
    def descriptor(self) -> VirtualDeviceDescriptor:
        assert self.facts.descriptor is not None
        return self.facts.descriptor

    def stages(self) -> List[Tuple[str, Callable[[], str]]]:
        return [
            ("prerequisites", self.check_prerequisites),
            ("sdk", self.setup_sdk),
            ("acquire", self.acquire_artifact),
            ("device", self.start_device),
            ("boot", self.wait_for_boot),
            ("install", self.install_app),
            ("launch", self.launch_app),
        ]

    def check_prerequisites(self) -> str:
        avail = require(
            "java", stage="prerequisites", env=self.config.subprocess_env(), runner=self._runner
        )
        return f"java available ({avail.path})"

    def setup_sdk(self) -> str:
        self.sdk.ensure(self.descriptor.target_architecture)
        return f"Android SDK ready at {self.config.sdk_root}"

    def acquire_artifact(self) -> str:
        if self.supplied_apk is not None:
            artifact = self.acquirer.use_supplied(self.supplied_apk)
        else:
            self.facts.remote_version = self.acquirer.check_remote_version()
            artifact = self.acquirer.acquire(
                self.config.apk_path, remote_version=self.facts.remote_version
            )
        self.facts.artifact = artifact
        return f"APK ready at {artifact.path} (version {artifact.version_name or 'unknown'})"

    def start_device(self) -> str:
        self.devices.ensure(self.descriptor)
        pid = self.devices.start(self.descriptor)
        return f"emulator {self.descriptor.name!r} running (PID {pid})"

    def wait_for_boot(self) -> str:
        state = self.devices.wait_until_ready(self.descriptor)
        if state is not ReadinessState.BOOTED:
            raise DeviceTimeout(
                f"emulator did not finish booting within {int(self.config.boot_timeout_s)}s"
            )
        return "device booted"

    def install_app(self) -> str:
        assert self.facts.artifact is not None
        self.facts.identity = self.deployer.install(self.facts.artifact)
        return f"device booted, {self.facts.identity} installed"

    def launch_app(self) -> str:
        self.facts.component = self.deployer.launch(
            self.facts.identity, artifact=self.facts.artifact
        )
        return f"{self.facts.component} launched"

    # --------------------------------------------------------------------- run

    def _run_stage(self, name: str, step: Callable[[], str]) -> None:
        logger.info("==> %s", name)
        try:
            fact = step()
        except AndroidControllerError as e:
            raise JailError(str(e), stage=name) from e
        except subprocess.TimeoutExpired as e:
            cmd = e.cmd if isinstance(e.cmd, str) else " ".join(str(c) for c in e.cmd)
            raise JailError(f"command timed out after {e.timeout}s: {cmd}", stage=name) from e
        except JailError as e:
            if e.stage == JailError.stage:
                e.stage = name
            raise
        self.facts.completed.append(name)
        self.facts.last_good = fact
        logger.info("%s: %s", name, fact)

    def run(self) -> PipelineResult:
        if self.mode is not RunMode.ATTACHED:
            return self._run()
        # Closing the terminal or `kill <pid>` must stop the emulator too.
        with sigterm_as_interrupt():
            return self._run()

    def _run(self) -> PipelineResult:
        logger.info("Starting Max Messenger setup (%s mode)", self.mode.value)
        logger.info("Cache directory: %s", self.config.cache_root)
        result: Optional[PipelineResult] = None
        try:
            for name, step in self.stages():
                self._run_stage(name, step)
            logger.info("Max Messenger is running in the emulator")
            if self.mode is RunMode.ATTACHED:
                self.follow_logs()
            else:
                logger.info("Emulator left running; use --attach to follow logs")
            result = PipelineResult(EXIT_OK, self.mode, self.facts)
        except KeyboardInterrupt:
            logger.warning("Interrupted")
            result = PipelineResult(EXIT_INTERRUPTED, self.mode, self.facts)
        except JailError as e:
            logger.error(format_diagnostic(e, self.facts))
            result = PipelineResult(EXIT_FAILURE, self.mode, self.facts, error=e)
        finally:
            if self.mode is RunMode.ATTACHED and (result is None or not result.ok):
                self.teardown()
        return result

    def follow_logs(self) -> None:
        logger.info("Following emulator logs (press Ctrl+C to stop the emulator)...")
        self.controller.follow_logcat(self._log_sink)

    def teardown(self) -> None:
        logger.info("Stopping emulator...")
        self.devices.stop(self.descriptor)


def uninstall(config: JailConfig, devices: VirtualDeviceManager) -> None:
    """Stop emulators for the configured AVD and remove the cache root."""

    devices.stop(VirtualDeviceDescriptor.for_config(config))
    if config.cache_root.exists():
        logger.info("Removing cache directory: %s", config.cache_root)
        shutil.rmtree(config.cache_root)
    else:
        logger.info("Cache directory not found: %s", config.cache_root)
    logger.info("Uninstall complete")
