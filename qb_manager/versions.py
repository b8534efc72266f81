"""
Version comparison for qBittorrent feature gating.

qBittorrent reports versions such as "v4.6.2" or "5.0.0beta1". Components are
compared numerically from left to right with missing components treated as
zero, so "4.10.0" is newer than "4.3.2". An unknown version is assumed to
support the newest request shapes.
"""

import re
from typing import Optional, Tuple


CURRENT = "current"
LEGACY = "legacy"

# First release supporting each request shape
TAGS_ON_ADD = "4.2.0"
CONTENT_LAYOUT = "4.3.2"
START_STOP_ACTIONS = "5.0.0"

_LEADING_DIGITS = re.compile(r"\d+")


def parse_version(version: str) -> Tuple[int, ...]:
    """
    Split a version string into integer components.

    A leading "v" is ignored. Each dot-separated component contributes its
    leading digits; a component without digits counts as zero.
    """
    version = version.strip().lstrip("vV")
    parts = []
    for component in version.split("."):
        match = _LEADING_DIGITS.match(component.strip())
        parts.append(int(match.group()) if match else 0)
    return tuple(parts)


def is_version_at_least(reported: Optional[str], target: str) -> bool:
    """Return True if the reported version is equal to or newer than target."""
    if not reported:
        return True

    left = parse_version(reported)
    right = parse_version(target)
    width = max(len(left), len(right))
    left = left + (0,) * (width - len(left))
    right = right + (0,) * (width - len(right))
    return left >= right


def choose_request_shape(reported: Optional[str], target: str) -> str:
    """Pick CURRENT when the remote supports the shape introduced in target, else LEGACY."""
    return CURRENT if is_version_at_least(reported, target) else LEGACY
