"""Snapshot builders for newly committed instances and queue timestamps."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence
import uuid

from lfgqueue.backend.models import INSTANCE_ACTIVE, HeroRecord, Instance, InstanceDefinition, Participant
from lfgqueue.backend.roles import normalize_role

DEFAULT_MAX_HP = 100


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return utc_now().isoformat()


def entry_expiry(queued_at: datetime, ttl_seconds: int) -> datetime:
    return queued_at + timedelta(seconds=ttl_seconds)


def build_participant(player_id: str, hero: HeroRecord) -> Participant:
    """Hydrate one roster slot from the hero's current record."""
    max_hp = hero.max_hp or DEFAULT_MAX_HP
    return Participant(
        player_id=player_id,
        hero_id=hero.id,
        display_name=hero.name or hero.id,
        role=normalize_role(hero.role),
        hero_class=hero.role,
        level=hero.level or 1,
        current_hp=hero.hp or max_hp,
        max_hp=max_hp,
        alive=True,
    )


def build_instance(
    definition: InstanceDefinition,
    participants: Sequence[Participant],
    organizer_id: str,
) -> Instance:
    """Return the initial record of a freshly launched instance."""
    return Instance(
        id=str(uuid.uuid4()),
        instance_kind_id=definition.id,
        kind=definition.kind,
        difficulty=definition.difficulty,
        status=INSTANCE_ACTIVE,
        participants=tuple(participants),
        current_stage=0,
        max_stages=len(definition.stages),
        stage_definitions=definition.stages,
        organizer_id=organizer_id,
        created_at=_utc_now_iso(),
    )
