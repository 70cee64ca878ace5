"""Role normalization for free-text hero class labels."""

from __future__ import annotations

TANK = "tank"
HEALER = "healer"
DPS = "dps"
ROLES = (TANK, HEALER, DPS)

TANK_LABELS = frozenset(
    {"guardian", "paladin", "warden", "bloodknight", "vanguard", "brewmaster", TANK}
)
HEALER_LABELS = frozenset(
    {"cleric", "atoner", "druid", "lightbringer", "shaman", "mistweaver", "chronomancer", "bard", HEALER}
)


def normalize_role(label: str | None) -> str:
    """Map a hero class or role label to tank, healer or dps."""
    if not label:
        return DPS
    lowered = label.strip().lower()
    if lowered in TANK_LABELS:
        return TANK
    if lowered in HEALER_LABELS:
        return HEALER
    return DPS
