"""Android SDK bootstrap: command-line tools, licenses and components.

Every step is idempotent. `sdkmanager` skips components that are already
installed, so `ensure()` is safe to run on every pipeline invocation.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, List, Optional

import httpx

from max_jail.artifacts.download import extract_zip_preserving_mode, make_client, stream_download
from max_jail.config import JailConfig
from max_jail.errors import NetworkFailure, ToolMissing, ToolNonfunctional
from max_jail.runtime.tools import Runner, require, run_tool

logger = logging.getLogger(__name__)

STAGE = "sdk"
_LICENSE_ANSWERS = "y\n" * 64


class SdkManager:
    def __init__(
        self,
        config: JailConfig,
        *,
        runner: Runner = run_tool,
        client_factory: Optional[Callable[[], httpx.Client]] = None,
    ) -> None:
        self.config = config
        self._runner = runner
        self._client_factory = client_factory or (
            lambda: make_client(timeout_s=config.http_timeout_s)
        )

    def components(self, arch: str) -> List[str]:
        api = self.config.api_level
        return [
            "platform-tools",
            f"platforms;android-{api}",
            f"build-tools;{self.config.build_tools_version}",
            "emulator",
            f"system-images;android-{api};{self.config.image_variant};{arch}",
        ]

    def has_cmdline_tools(self) -> bool:
        return self.config.sdkmanager_path.is_file()

    def ensure_cmdline_tools(self) -> None:
        if self.has_cmdline_tools():
            logger.info("Android SDK found at %s", self.config.sdk_root)
            return

        url = self.config.cmdline_tools_url
        logger.info("Android SDK not found. Downloading command-line tools...")
        self.config.sdk_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=self.config.sdk_root, prefix=".cmdline-") as tmp:
            tmp_dir = Path(tmp)
            archive = tmp_dir / "cmdline-tools.zip"
            try:
                with self._client_factory() as client:
                    stream_download(client, url, archive, resume=False)
            except NetworkFailure as e:
                e.stage = STAGE
                raise

            try:
                extract_zip_preserving_mode(archive, tmp_dir / "unpacked")
            except zipfile.BadZipFile as e:
                raise NetworkFailure(
                    f"command-line tools download is not a zip: {url}", stage=STAGE
                ) from e

            unpacked = tmp_dir / "unpacked" / "cmdline-tools"
            if not unpacked.is_dir():
                raise ToolMissing("sdkmanager (cmdline-tools missing from archive)", stage=STAGE)

            dest = self.config.cmdline_tools_dir
            if dest.exists():
                logger.info("Removing incomplete installation at %s", dest)
                shutil.rmtree(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(unpacked), str(dest))
        logger.info("Android command-line tools installed")

    def _sdkmanager(self, *args: str, input_text: Optional[str] = None, timeout_s: float = 3600):
        cmd = [str(self.config.sdkmanager_path), f"--sdk_root={self.config.sdk_root}", *args]
        return self._runner(
            cmd, env=self.config.subprocess_env(), timeout_s=timeout_s, input_text=input_text
        )

    def accept_licenses(self) -> bool:
        logger.info("Accepting Android SDK licenses...")
        res = self._sdkmanager("--licenses", input_text=_LICENSE_ANSWERS, timeout_s=600)
        logger.debug("sdkmanager --licenses output:\n%s", res.output)
        if not res.ok():
            logger.warning("Some licenses may need manual acceptance (rc=%s)", res.returncode)
        return res.ok()

    def install_components(self, arch: str) -> None:
        components = self.components(arch)
        logger.info("Installing SDK components (this may take a while on first run)...")
        for component in components:
            logger.debug("  %s", component)
        res = self._sdkmanager(*components)
        logger.debug("sdkmanager output:\n%s", res.output)
        if not res.ok():
            raise ToolNonfunctional(
                "sdkmanager",
                f"component install failed (rc={res.returncode})",
                stage=STAGE,
            )

    def ensure(self, arch: str) -> None:
        self.ensure_cmdline_tools()
        env = self.config.subprocess_env()
        sdkmanager = self.config.sdkmanager_path
        require("sdkmanager", stage=STAGE, path=sdkmanager, env=env, runner=self._runner)
        self.accept_licenses()
        self.install_components(arch)
        for name, path in (
            ("adb", self.config.adb_path),
            ("emulator", self.config.emulator_path),
            ("avdmanager", self.config.avdmanager_path),
        ):
            require(name, stage=STAGE, path=path, env=env, runner=self._runner)
        logger.info("Android SDK setup complete")
