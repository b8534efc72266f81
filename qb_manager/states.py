"""
Grouping of qBittorrent torrent states.

The remote reports one of a closed set of state tags. Statistics and filters
classify a state by membership in these families, never by comparing against a
single tag.
"""

from typing import Dict, FrozenSet, Optional


DOWNLOADING = frozenset({"downloading", "stalledDL", "metaDL", "forcedDL"})
SEEDING = frozenset({"uploading", "stalledUP", "forcedUP", "queuedUP"})
PAUSED = frozenset({"pausedDL", "pausedUP", "paused", "stopped", "stoppedDL", "stoppedUP"})
CHECKING = frozenset({"checkingUP", "checkingDL", "checkingResumeData"})
ERROR = frozenset({"error", "missingFiles"})

FAMILIES: Dict[str, FrozenSet[str]] = {
    "downloading": DOWNLOADING,
    "seeding": SEEDING,
    "paused": PAUSED,
    "checking": CHECKING,
    "error": ERROR,
}

# Transferring right now, regardless of stalls
ACTIVE = frozenset({"downloading", "uploading", "forcedDL", "forcedUP"})
COMPLETED = SEEDING | {"pausedUP"}

STATUS_FILTERS: Dict[str, FrozenSet[str]] = {
    **FAMILIES,
    "completed": COMPLETED,
    "active": ACTIVE,
}


def classify(state: Optional[str]) -> Optional[str]:
    """Return the family name a state belongs to, or None for unknown states."""
    for family, states in FAMILIES.items():
        if state in states:
            return family
    return None


def states_for_filter(status: Optional[str]) -> Optional[FrozenSet[str]]:
    """
    Resolve a status filter name to the set of states it matches.

    Returns None when no filtering should happen ("all", empty or unknown).
    """
    if not status or status == "all":
        return None
    return STATUS_FILTERS.get(status)
