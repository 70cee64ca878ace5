"""Three-tier matchmaking pass over one queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading
from typing import Callable, Sequence

from lfgqueue.backend.catalog import InstanceCatalog
from lfgqueue.backend.errors import CommitAborted
from lfgqueue.backend.factory import InstanceFactory
from lfgqueue.backend.models import InstanceDefinition, MemberStats, Party, QueueEntry
from lfgqueue.backend.roles import normalize_role
from lfgqueue.backend.state import utc_now
from lfgqueue.backend.store import HeroDirectory, PartyRegistry, QueueStore

logger = logging.getLogger(__name__)


def group_by_party(entries: Sequence[QueueEntry]) -> dict[str, list[QueueEntry]]:
    """Bucket party entries by party id, keeping queue order."""
    groups: dict[str, list[QueueEntry]] = {}
    for entry in entries:
        if entry.party_id:
            groups.setdefault(entry.party_id, []).append(entry)
    return groups


def individuals(entries: Sequence[QueueEntry]) -> list[QueueEntry]:
    return [entry for entry in entries if not entry.party_id]


def _fits(definition: InstanceDefinition, size: int) -> bool:
    return definition.min_players <= size <= definition.max_players


@dataclass
class MatchmakingEngine:
    """Forms groups from one queue and launches an instance for each.

    A pass runs in order: expiry eviction, target resolution, complete
    parties, parties filled with individuals, individuals only. Every tier
    re-reads the queue so it sees the commits of the tiers before it. Passes
    on the same engine never overlap; passes on different engines or
    processes are kept apart by the store's conditional claim in
    ``apply_commit``.
    """

    queue_kind: str
    queue: QueueStore
    parties: PartyRegistry
    heroes: HeroDirectory
    catalog: InstanceCatalog
    factory: InstanceFactory
    clock: Callable[[], datetime] = field(default=utc_now)

    def __post_init__(self) -> None:
        self._pass_lock = threading.Lock()

    def run_pass(self) -> int:
        """Run one matchmaking pass and return the number of groups formed."""
        with self._pass_lock:
            return self._run_pass()

    def _run_pass(self) -> int:
        evicted = self.queue.evict_expired(self.queue_kind, self.clock())
        if evicted:
            logger.info("Evicted %d expired %s queue entries", evicted, self.queue_kind)

        entries = self.queue.list_entries(self.queue_kind)
        if not entries:
            return 0

        definition = self.resolve_target(entries)
        if definition is None:
            logger.info("No eligible %s for %d queued players", self.queue_kind, len(entries))
            return 0

        groups_formed = self._match_complete_parties(entries, definition)
        groups_formed += self._match_filling_parties(definition)
        groups_formed += self._match_individuals(definition)

        if groups_formed == 0:
            logger.info(
                "Waiting for more players: %d in %s queue, need at least %d to form a group",
                len(entries),
                self.queue_kind,
                definition.min_players,
            )
        return groups_formed

    def resolve_target(self, entries: Sequence[QueueEntry]) -> InstanceDefinition | None:
        hinted_ids = list(dict.fromkeys(entry.instance_kind_hint for entry in entries if entry.instance_kind_hint))
        if hinted_ids:
            candidates = []
            for hinted_id in hinted_ids:
                definition = self.catalog.instance_by_id(hinted_id)
                if definition is None:
                    logger.warning("Queued players asked for unknown %s %s", self.queue_kind, hinted_id)
                    continue
                candidates.append(definition)
        else:
            candidates = self.catalog.eligible_instances_for_group(self._member_stats(entries))

        if not candidates:
            return None
        for definition in candidates:
            if definition.id == self.catalog.launch_instance_id:
                return definition
        return candidates[0]

    def _member_stats(self, entries: Sequence[QueueEntry]) -> list[MemberStats]:
        stats: list[MemberStats] = []
        for entry in entries:
            hero = self.heroes.get_hero(entry.hero_id)
            if hero is None:
                continue
            stats.append(MemberStats(level=hero.level, item_score=entry.item_score))
        return stats

    def _match_complete_parties(self, entries: Sequence[QueueEntry], definition: InstanceDefinition) -> int:
        formed = 0
        for party_id, members in group_by_party(entries).items():
            party = self._load_party(party_id, members)
            if party is None:
                continue
            size = len(members)
            chosen = self._definition_for(members[0].instance_kind_hint or party.instance_kind_hint, definition)
            if chosen is None:
                continue
            if party.fill_to_max and size < chosen.max_players:
                logger.debug("Party %s (%d members) wants to fill, leaving it for the fill tier", party_id, size)
                continue
            if not _fits(chosen, size):
                if size > chosen.max_players:
                    logger.warning(
                        "Party %s size %d doesn't match %s requirements (%d-%d)",
                        party_id, size, chosen.id, chosen.min_players, chosen.max_players,
                    )
                continue
            if self._commit(members, party_id, chosen):
                logger.info("Party %s matched: %d members", party_id, size)
                formed += 1
        return formed

    def _match_filling_parties(self, definition: InstanceDefinition) -> int:
        entries = self.queue.list_entries(self.queue_kind)
        pool = individuals(entries)
        formed = 0
        for party_id, members in group_by_party(entries).items():
            party = self._load_party(party_id, members)
            if party is None:
                continue
            size = len(members)
            chosen = self._definition_for(members[0].instance_kind_hint or party.instance_kind_hint, definition)
            if chosen is None:
                continue
            if size < chosen.min_players:
                needed = chosen.min_players - size
            elif party.fill_to_max and size < chosen.max_players:
                needed = chosen.max_players - size
            else:
                continue
            if len(pool) < needed:
                continue

            group = [*members, *pool[:needed]]
            if self._commit(group, party_id, chosen):
                logger.info(
                    "Party %s (%d members) matched with %d individual(s): %d total",
                    party_id, size, needed, len(group),
                )
                pool = pool[needed:]
                formed += 1
        return formed

    def _match_individuals(self, definition: InstanceDefinition) -> int:
        pool = individuals(self.queue.list_entries(self.queue_kind))
        formed = 0
        while pool:
            chosen = self._definition_for(pool[0].instance_kind_hint, definition)
            if chosen is None:
                pool = pool[1:]
                continue
            if len(pool) < chosen.min_players:
                logger.debug("%d individual(s) left, %s needs %d", len(pool), chosen.id, chosen.min_players)
                break
            size = min(chosen.max_players, len(pool))
            batch, pool = pool[:size], pool[size:]
            if not self._commit(batch, None, chosen):
                break
            logger.info("Individual group formed: %d players", size)
            formed += 1
        return formed

    def _load_party(self, party_id: str, members: Sequence[QueueEntry]) -> Party | None:
        party = self.parties.get_party(party_id)
        if party is None:
            logger.warning("Queued party %s no longer exists, leaving its entries queued", party_id)
            return None
        strangers = [member.player_id for member in members if member.player_id not in party.members]
        if strangers:
            logger.warning("Party %s has queue entries for non-members %s, skipping", party_id, ", ".join(strangers))
            return None
        heroes = {member.player_id: member.hero_id for member in party.member_data}
        swapped = [member.player_id for member in members if heroes.get(member.player_id) != member.hero_id]
        if swapped:
            logger.warning(
                "Party %s has queue entries whose hero no longer matches the roster (%s), skipping",
                party_id, ", ".join(swapped),
            )
            return None
        roles = {member.player_id: normalize_role(member.role) for member in party.member_data}
        for member in members:
            expected = roles.get(member.player_id)
            if expected is not None and expected != member.role:
                logger.warning(
                    "Player %s queued as %s but is %s in party %s", member.player_id, member.role, expected, party_id
                )
        return party

    def _definition_for(self, hint: str | None, fallback: InstanceDefinition) -> InstanceDefinition | None:
        if not hint:
            return fallback
        definition = self.catalog.instance_by_id(hint)
        if definition is None:
            logger.warning("Requested %s %s is not available", self.queue_kind, hint)
        return definition

    def _commit(self, members: Sequence[QueueEntry], party_id: str | None, definition: InstanceDefinition) -> bool:
        try:
            self.factory.commit(members, party_id, definition)
        except CommitAborted as exc:
            logger.warning("Commit for %s aborted, entries stay queued: %s", definition.id, exc)
            return False
        return True
