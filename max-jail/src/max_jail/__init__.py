"""max-in-jail: provision an Android emulator and run Max Messenger inside it.

The pipeline is a fixed sequence of idempotent stages:
- prerequisite and SDK bootstrap
- APK acquisition (multi-source fallback chain) and verification
- AVD creation/start and boot wait
- install/update and launch of the app
"""

__version__ = "0.3.0"

__all__ = [
    "artifacts",
    "cli",
    "config",
    "errors",
    "identity",
    "pipeline",
    "runtime",
]
