"""Domain records for queue entries, parties, heroes and instances."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

QUEUE_KIND_DUNGEON = "dungeon"
QUEUE_KIND_RAID = "raid"
QUEUE_KINDS = (QUEUE_KIND_DUNGEON, QUEUE_KIND_RAID)

PARTY_FORMING = "forming"
PARTY_QUEUED = "queued"
PARTY_IN_INSTANCE = "in_instance"
PARTY_DISBANDED = "disbanded"

INSTANCE_ACTIVE = "active"


@dataclass(frozen=True)
class QueueEntry:
    id: str
    player_id: str
    hero_id: str
    role: str
    original_role: str
    item_score: int
    queued_at: datetime
    expires_at: datetime
    queue_kind: str = QUEUE_KIND_DUNGEON
    instance_kind_hint: str | None = None
    party_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class PartyMember:
    player_id: str
    hero_id: str
    display_name: str
    role: str
    level: int = 1


@dataclass(frozen=True)
class Party:
    id: str
    leader_id: str
    members: tuple[str, ...]
    member_data: tuple[PartyMember, ...]
    status: str = PARTY_FORMING
    fill_to_max: bool = True
    queue_kind: str | None = None
    instance_kind_hint: str | None = None


@dataclass(frozen=True)
class ActiveInstance:
    kind: str
    instance_id: str


@dataclass(frozen=True)
class HeroRecord:
    id: str
    name: str
    role: str
    level: int = 1
    hp: int | None = None
    max_hp: int | None = None
    item_score: int = 0
    active_instance: ActiveInstance | None = None


@dataclass(frozen=True)
class StageDefinition:
    id: str
    name: str
    is_boss: bool = False


@dataclass(frozen=True)
class InstanceDefinition:
    id: str
    name: str
    kind: str
    difficulty: str = "normal"
    min_players: int = 2
    max_players: int = 5
    level_requirement: int = 0
    item_score_requirement: int = 0
    stages: tuple[StageDefinition, ...] = ()


@dataclass(frozen=True)
class MemberStats:
    level: int
    item_score: int


@dataclass(frozen=True)
class Participant:
    player_id: str
    hero_id: str
    display_name: str
    role: str
    hero_class: str
    level: int
    current_hp: int
    max_hp: int
    alive: bool = True


@dataclass(frozen=True)
class Instance:
    id: str
    instance_kind_id: str
    kind: str
    difficulty: str
    status: str
    participants: tuple[Participant, ...]
    current_stage: int
    max_stages: int
    stage_definitions: tuple[StageDefinition, ...]
    organizer_id: str
    created_at: str


@dataclass(frozen=True)
class CommitPlan:
    """Every write a committed group needs, applied by the store as one unit."""

    entry_ids: tuple[str, ...]
    instance: Instance
    party_id: str | None
    hero_ids: tuple[str, ...]


@dataclass(frozen=True)
class JoinResult:
    queue_id: str


@dataclass(frozen=True)
class MemberQueueError:
    player_id: str
    error: str


@dataclass(frozen=True)
class PartyQueueResult:
    queued_count: int
    total: int
    errors: tuple[MemberQueueError, ...] = ()


@dataclass(frozen=True)
class QueueStatus:
    in_queue: bool
    role: str | None = None
    instance_kind_hint: str | None = None
    queue_kind: str | None = None
    role_counts: dict[str, int] = field(default_factory=dict)
    estimated_wait_seconds: int | None = None
    queued_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        if not self.in_queue:
            return {"in_queue": False}
        return {
            "in_queue": True,
            "role": self.role,
            "instance_kind_hint": self.instance_kind_hint,
            "queue_kind": self.queue_kind,
            "role_counts": dict(self.role_counts),
            "estimated_wait_seconds": self.estimated_wait_seconds,
            "queued_at": self.queued_at,
        }
