from __future__ import annotations

import re
from typing import Any, Optional

PACKAGE_IDENTITY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_.]*$")


def is_valid_package_identity(value: Any) -> bool:
    """Return True iff `value` can safely address an installed package.

    A badging parse that goes wrong tends to produce a bare version code
    (e.g. "251900") instead of a name; those must never reach `pm`/`am`.
    """

    if not isinstance(value, str) or not PACKAGE_IDENTITY_RE.match(value):
        return False
    return value != re.sub(r"[^0-9]", "", value)


def normalize_package_identity(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    return candidate if is_valid_package_identity(candidate) else None
