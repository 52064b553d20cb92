"""Android runtime helpers.

This package contains *thin* wrappers around adb/avdmanager/emulator so that:
  * device lifecycle (create/start/boot wait/stop) is idempotent
  * package registry queries and install/launch commands are auditable

Nothing here talks to the device except through the adb binary.
"""
