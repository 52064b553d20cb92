from __future__ import annotations

import pytest

from max_jail.identity import is_valid_package_identity, normalize_package_identity


@pytest.mark.parametrize(
    "value",
    ["ru.oneme.app", "com.max.messenger", "a", "ru.vk.max2", "app_1.x", "A1"],
)
def test_valid_package_identities(value: str) -> None:
    assert is_valid_package_identity(value)


@pytest.mark.parametrize(
    "value",
    [
        "",
        "251900",
        "1ru.oneme",
        ".ru.oneme",
        "ru.oneme/app",
        "ru oneme",
        "ru-oneme",
        None,
        251900,
    ],
)
def test_invalid_package_identities(value) -> None:
    assert not is_valid_package_identity(value)


def test_numeric_check_strips_non_digits_first() -> None:
    # Starts with a letter, so it passes the pattern, but is not all digits.
    assert is_valid_package_identity("v251900")


def test_normalize_strips_whitespace_and_rejects_invalid() -> None:
    assert normalize_package_identity("  ru.oneme.app\r\n") == "ru.oneme.app"
    assert normalize_package_identity("251900") is None
    assert normalize_package_identity(None) is None
