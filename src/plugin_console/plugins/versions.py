import re
from enum import Enum
from typing import Optional, Tuple

from semver import Version

_NUMERIC = re.compile(r"^\d+(\.\d+)*$")


class Comparison(str, Enum):
    """How a downloaded version relates to the installed one."""

    SAME = "same"
    UPGRADE = "upgrade"  # installed is older
    DOWNGRADE = "downgrade"  # installed is newer
    UNKNOWN = "unknown"


# Confirmation the caller must give before the install may proceed.
REQUIRED_ACTION = {
    Comparison.SAME: "reinstall",
    Comparison.UPGRADE: "update",
    Comparison.DOWNGRADE: "downgrade",
    Comparison.UNKNOWN: "reinstall",
}

CONFIRM_ACTIONS = ("update", "downgrade", "reinstall")


def _clean(version: str) -> str:
    # "v1.2.0-SNAPSHOT+build5" -> "1.2.0"
    return str(version).strip().lstrip("vV").split("-")[0].split("+")[0]


def _parse(version: str) -> Optional[Version]:
    try:
        return Version.parse(_clean(version), optional_minor_and_patch=True)
    except (ValueError, TypeError):
        return None


def _numeric_parts(version: str) -> Optional[Tuple[int, ...]]:
    cleaned = _clean(version)
    if not _NUMERIC.match(cleaned):
        return None
    return tuple(int(p) for p in cleaned.split("."))


def compare_versions(new_version: str, current_version: str) -> Comparison:
    """
    Compare a candidate version against the installed one.

    Semantic versions (with optional minor/patch) are compared with semver;
    longer dotted numeric versions such as 1.2.3.4 are compared part by part;
    anything else is only recognised as SAME on exact match.
    """
    new, current = _parse(new_version), _parse(current_version)
    if new is not None and current is not None:
        return _from_cmp(new.compare(current))

    new_parts, current_parts = _numeric_parts(new_version), _numeric_parts(current_version)
    if new_parts is not None and current_parts is not None:
        width = max(len(new_parts), len(current_parts))
        new_parts = new_parts + (0,) * (width - len(new_parts))
        current_parts = current_parts + (0,) * (width - len(current_parts))
        return _from_cmp((new_parts > current_parts) - (new_parts < current_parts))

    if str(new_version) == str(current_version):
        return Comparison.SAME
    return Comparison.UNKNOWN


def _from_cmp(result: int) -> Comparison:
    if result > 0:
        return Comparison.UPGRADE
    if result < 0:
        return Comparison.DOWNGRADE
    return Comparison.SAME
