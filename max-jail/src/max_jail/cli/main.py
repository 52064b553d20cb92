from __future__ import annotations

import argparse
import logging
import re
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

import yaml

from max_jail.artifacts.acquirer import ArtifactAcquirer, discard
from max_jail.artifacts.sources import RuStoreSource
from max_jail.artifacts.verifier import ApkInspector, ArtifactVerifier
from max_jail.config import ConfigError, JailConfig
from max_jail.errors import JailError
from max_jail.logging_config import configure_logging
from max_jail.pipeline import EXIT_FAILURE, EXIT_OK, Pipeline, RunMode, uninstall
from max_jail.runtime.android.avd import VirtualDeviceManager
from max_jail.runtime.android.controller import AndroidController

logger = logging.getLogger("max_jail.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="max-in-jail",
        description=(
            "Provision a local Android emulator and run Max Messenger inside it. "
            "By default the script exits once the app is launched and the emulator keeps running."
        ),
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--attach",
        action="store_true",
        help="Run in the foreground: follow logcat, Ctrl+C stops the emulator.",
    )
    mode.add_argument(
        "--download-only",
        action="store_true",
        help="Only download the current RuStore APK as <cache>/apk/max-<version>.apk.",
    )
    mode.add_argument(
        "--uninstall",
        action="store_true",
        help="Stop the emulator and remove all data under the cache directory.",
    )
    parser.add_argument(
        "--apk",
        type=Path,
        default=None,
        help="Install this APK instead of downloading one.",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Do not ask for confirmation (with --uninstall or --download-only).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML overrides file (default: <cache>/config.yaml when present).",
    )
    parser.add_argument(
        "--cache-root",
        type=Path,
        default=None,
        help="Cache directory (default: $MAX_IN_JAIL_CACHE or ~/.cache/max-in-jail).",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console.")
    return parser


def _confirm_uninstall(config: JailConfig, ask: Callable[[str], str]) -> bool:
    print("WARNING: this will delete:")
    print(f"  - all data in cache directory: {config.cache_root}")
    print(f"    * Android Virtual Device: {config.avd_name}")
    print("    * downloaded APK files")
    print("    * log files")
    print(f"  - the Android SDK under {config.sdk_root}")
    print("This action cannot be undone!")
    try:
        reply = ask("Continue? (yes/no): ")
    except EOFError:
        return False
    return reply.strip().lower() == "yes"


def run_uninstall(
    config: JailConfig, *, assume_yes: bool, ask: Callable[[str], str] = input
) -> int:
    if not assume_yes and not _confirm_uninstall(config, ask):
        print("Cancelled.")
        return EXIT_OK
    controller = AndroidController(adb_path=str(config.adb_path), env=config.subprocess_env())
    uninstall(config, VirtualDeviceManager(config, controller=controller))
    return EXIT_OK


def _safe_version(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name)


def run_download_only(
    config: JailConfig,
    *,
    assume_yes: bool,
    ask: Callable[[str], str] = input,
    acquirer: Optional[ArtifactAcquirer] = None,
) -> int:
    """Fetch the current RuStore APK into the APK directory, named by version."""

    if acquirer is None:
        verifier = ArtifactVerifier(
            ApkInspector(config.build_tools_root, env=config.subprocess_env())
        )
        acquirer = ArtifactAcquirer(config, verifier=verifier, sources=[RuStoreSource(config)])
    remote = acquirer.check_remote_version()
    if remote is None:
        logger.error("Could not resolve the current version from RuStore")
        return EXIT_FAILURE

    target = config.apk_dir / f"max-{_safe_version(remote.version_name)}.apk"
    if target.exists():
        logger.info("APK file already exists: %s (%d bytes)", target, target.stat().st_size)
        if not assume_yes:
            try:
                reply = ask("Download again? (y/N): ")
            except EOFError:
                reply = ""
            if reply.strip().lower() not in ("y", "yes"):
                logger.info("Skipping download")
                return EXIT_OK
        discard(target)

    try:
        artifact = acquirer.acquire(target, remote_version=remote)
    except JailError as e:
        logger.error("Download failed: %s", e)
        return EXIT_FAILURE
    print(artifact.path)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.apk is not None and (args.uninstall or args.download_only):
        parser.error("--apk cannot be combined with --uninstall or --download-only")

    try:
        config = JailConfig.from_env(cache_root=args.cache_root, overrides_path=args.config)
    except (ConfigError, FileNotFoundError, yaml.YAMLError, ValueError) as e:
        print(f"[ERROR] invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.uninstall:
        configure_logging(verbose=args.verbose)
        return run_uninstall(config, assume_yes=args.yes)

    config.ensure_dirs()
    configure_logging(log_file=config.log_file, verbose=args.verbose)
    logger.info("Log file: %s", config.log_file)

    if args.download_only:
        return run_download_only(config, assume_yes=args.yes)

    mode = RunMode.ATTACHED if args.attach else RunMode.DETACHED
    pipeline = Pipeline.from_config(config, mode=mode, supplied_apk=args.apk)
    return pipeline.run().exit_code


if __name__ == "__main__":
    raise SystemExit(main())
