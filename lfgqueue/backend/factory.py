"""Instance creation for matched groups."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Sequence

from lfgqueue.backend.errors import CommitAborted, ValidationError
from lfgqueue.backend.models import CommitPlan, InstanceDefinition, Participant, QueueEntry
from lfgqueue.backend.state import build_instance, build_participant
from lfgqueue.backend.store import HeroDirectory, QueueStore

logger = logging.getLogger(__name__)


@dataclass
class InstanceFactory:
    heroes: HeroDirectory
    queue: QueueStore

    def commit(
        self,
        members: Sequence[QueueEntry],
        party_id: str | None,
        definition: InstanceDefinition,
    ) -> str:
        """Launch an instance for ``members`` and consume their queue entries.

        Members whose hero can no longer be found are left off the roster.
        If that leaves fewer than ``definition.min_players`` heroes nothing is
        written and CommitAborted is raised; otherwise every record change is
        handed to the store as a single CommitPlan.
        """
        if not definition.min_players <= len(members) <= definition.max_players:
            raise ValidationError(
                f"Group size {len(members)} outside {definition.id} bounds "
                f"({definition.min_players}-{definition.max_players})"
            )

        participants = self._hydrate(members)
        if len(participants) < definition.min_players:
            raise CommitAborted(
                f"Not enough valid heroes for {definition.id}: {len(participants)} < {definition.min_players}"
            )

        instance = build_instance(definition, participants, organizer_id=members[0].player_id)
        plan = CommitPlan(
            entry_ids=tuple(member.id for member in members),
            instance=instance,
            party_id=party_id,
            hero_ids=tuple(participant.hero_id for participant in participants),
        )
        self.queue.apply_commit(plan)
        logger.info(
            "Created %s instance %s (%s) for %d players%s",
            definition.kind,
            instance.id,
            definition.id,
            len(participants),
            f" from party {party_id}" if party_id else "",
        )
        return instance.id

    def _hydrate(self, members: Sequence[QueueEntry]) -> list[Participant]:
        participants: list[Participant] = []
        for member in members:
            hero = self.heroes.get_hero(member.hero_id)
            if hero is None:
                logger.warning("Hero %s of player %s not found, dropping from group", member.hero_id, member.player_id)
                continue
            participants.append(build_participant(member.player_id, hero))
        return participants
