"""Instance definitions and group eligibility lookups."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from lfgqueue.backend.models import (
    QUEUE_KIND_DUNGEON,
    QUEUE_KIND_RAID,
    InstanceDefinition,
    MemberStats,
    StageDefinition,
)

DEFAULT_LAUNCH_DUNGEON = "goblin_cave"
DEFAULT_LAUNCH_RAID = "corrupted_temple"


def _raid_stages(waves: int, boss_name: str) -> tuple[StageDefinition, ...]:
    stages = [StageDefinition(id=f"wave_{number}", name=f"Wave {number}") for number in range(1, waves + 1)]
    stages.append(StageDefinition(id="boss", name=boss_name, is_boss=True))
    return tuple(stages)


DUNGEONS: tuple[InstanceDefinition, ...] = (
    InstanceDefinition(
        id="goblin_cave",
        name="Goblin Cave",
        kind=QUEUE_KIND_DUNGEON,
        difficulty="normal",
        level_requirement=10,
        item_score_requirement=200,
        stages=(
            StageDefinition(id="entrance", name="Cave Entrance"),
            StageDefinition(id="main_chamber", name="Main Chamber"),
            StageDefinition(id="goblin_chief", name="Goblin Chief's Lair", is_boss=True),
        ),
    ),
    InstanceDefinition(
        id="ancient_catacombs",
        name="Ancient Catacombs",
        kind=QUEUE_KIND_DUNGEON,
        difficulty="normal",
        min_players=3,
        max_players=5,
        level_requirement=15,
        item_score_requirement=400,
        stages=(
            StageDefinition(id="entrance_hall", name="Entrance Hall"),
            StageDefinition(id="corridor", name="Dark Corridor"),
            StageDefinition(id="tomb_chamber", name="Tomb Chamber"),
            StageDefinition(id="final_chamber", name="Final Chamber", is_boss=True),
        ),
    ),
    InstanceDefinition(
        id="demon_ruins",
        name="Demon Ruins",
        kind=QUEUE_KIND_DUNGEON,
        difficulty="heroic",
        min_players=4,
        max_players=6,
        level_requirement=20,
        item_score_requirement=800,
        stages=(
            StageDefinition(id="outer_ruins", name="Outer Ruins"),
            StageDefinition(id="inner_chamber", name="Inner Chamber"),
            StageDefinition(id="demon_lord_chamber", name="Demon Lord's Chamber", is_boss=True),
        ),
    ),
)

RAIDS: tuple[InstanceDefinition, ...] = (
    InstanceDefinition(
        id="corrupted_temple",
        name="Corrupted Temple",
        kind=QUEUE_KIND_RAID,
        min_players=3,
        max_players=5,
        level_requirement=15,
        item_score_requirement=500,
        stages=_raid_stages(3, "Corrupted High Priest"),
    ),
    InstanceDefinition(
        id="bandit_stronghold",
        name="Bandit Stronghold",
        kind=QUEUE_KIND_RAID,
        min_players=3,
        max_players=5,
        level_requirement=15,
        item_score_requirement=500,
        stages=_raid_stages(4, "Bandit King"),
    ),
    InstanceDefinition(
        id="haunted_crypt",
        name="Haunted Crypt",
        kind=QUEUE_KIND_RAID,
        min_players=3,
        max_players=5,
        level_requirement=15,
        item_score_requirement=500,
        stages=_raid_stages(3, "Lich Phylactery"),
    ),
    InstanceDefinition(
        id="dragons_lair",
        name="Dragon's Lair",
        kind=QUEUE_KIND_RAID,
        difficulty="heroic",
        min_players=5,
        max_players=8,
        level_requirement=30,
        item_score_requirement=1500,
        stages=_raid_stages(5, "Mature Dragon"),
    ),
    InstanceDefinition(
        id="demon_fortress",
        name="Demon Fortress",
        kind=QUEUE_KIND_RAID,
        difficulty="heroic",
        min_players=5,
        max_players=8,
        level_requirement=30,
        item_score_requirement=1500,
        stages=_raid_stages(5, "Demon Lord"),
    ),
    InstanceDefinition(
        id="titans_keep",
        name="Titan's Keep",
        kind=QUEUE_KIND_RAID,
        difficulty="heroic",
        min_players=5,
        max_players=8,
        level_requirement=30,
        item_score_requirement=1500,
        stages=_raid_stages(4, "Stone Titan"),
    ),
    InstanceDefinition(
        id="shadowlands",
        name="Shadowlands",
        kind=QUEUE_KIND_RAID,
        difficulty="heroic",
        min_players=5,
        max_players=8,
        level_requirement=30,
        item_score_requirement=1500,
        stages=_raid_stages(5, "Shadow Empress"),
    ),
    InstanceDefinition(
        id="elemental_plane",
        name="Elemental Plane",
        kind=QUEUE_KIND_RAID,
        difficulty="mythic",
        min_players=8,
        max_players=10,
        level_requirement=45,
        item_score_requirement=3000,
        stages=_raid_stages(6, "Elemental Overlord"),
    ),
    InstanceDefinition(
        id="void_citadel",
        name="Void Citadel",
        kind=QUEUE_KIND_RAID,
        difficulty="mythic",
        min_players=8,
        max_players=10,
        level_requirement=45,
        item_score_requirement=3000,
        stages=_raid_stages(7, "Void Incarnate"),
    ),
    InstanceDefinition(
        id="celestial_sanctum",
        name="Celestial Sanctum",
        kind=QUEUE_KIND_RAID,
        difficulty="mythic",
        min_players=8,
        max_players=10,
        level_requirement=45,
        item_score_requirement=3000,
        stages=_raid_stages(6, "Fallen Archangel"),
    ),
)


class InstanceCatalog(Protocol):
    launch_instance_id: str

    def instance_by_id(self, instance_id: str) -> InstanceDefinition | None:
        """Return the definition for an instance id, or None when unknown."""

    def eligible_instances_for_group(self, members: Sequence[MemberStats]) -> list[InstanceDefinition]:
        """Return enabled definitions the group's average level and item score qualify for."""


def average_stats(members: Sequence[MemberStats]) -> tuple[float, float]:
    count = len(members)
    return (
        sum(member.level for member in members) / count,
        sum(member.item_score for member in members) / count,
    )


def _meets_requirements(definition: InstanceDefinition, level: float, item_score: float) -> bool:
    if definition.level_requirement and level < definition.level_requirement:
        return False
    if definition.item_score_requirement and item_score < definition.item_score_requirement:
        return False
    return True


@dataclass
class StaticInstanceCatalog:
    """Catalog for one queue kind backed by in-process definitions.

    Only definitions listed in ``enabled_ids`` take part in matchmaking; the
    launch definition is enabled when nothing else is given.
    """

    definitions: Iterable[InstanceDefinition]
    launch_instance_id: str
    enabled_ids: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        self._by_id: dict[str, InstanceDefinition] = {definition.id: definition for definition in self.definitions}
        if not self.enabled_ids:
            self.enabled_ids = frozenset({self.launch_instance_id})

    def instance_by_id(self, instance_id: str) -> InstanceDefinition | None:
        return self._by_id.get(instance_id)

    def all_instances(self) -> list[InstanceDefinition]:
        return list(self._by_id.values())

    def eligible_instances_for_group(self, members: Sequence[MemberStats]) -> list[InstanceDefinition]:
        if not members:
            return []
        level, item_score = average_stats(members)
        return [
            definition
            for definition in self._by_id.values()
            if definition.id in self.enabled_ids and _meets_requirements(definition, level, item_score)
        ]

    def eligible_instances_for_hero(self, level: int, item_score: int) -> list[InstanceDefinition]:
        return [definition for definition in self._by_id.values() if _meets_requirements(definition, level, item_score)]


def dungeon_catalog(launch_instance_id: str = DEFAULT_LAUNCH_DUNGEON) -> StaticInstanceCatalog:
    return StaticInstanceCatalog(definitions=DUNGEONS, launch_instance_id=launch_instance_id)


def raid_catalog(launch_instance_id: str = DEFAULT_LAUNCH_RAID) -> StaticInstanceCatalog:
    return StaticInstanceCatalog(definitions=RAIDS, launch_instance_id=launch_instance_id)
