"""Queue operations exposed to the transport layer."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable
import uuid

from lfgqueue.backend.catalog import (
    DEFAULT_LAUNCH_DUNGEON,
    DEFAULT_LAUNCH_RAID,
    StaticInstanceCatalog,
    dungeon_catalog,
    raid_catalog,
)
from lfgqueue.backend.config import DEFAULT_QUEUE_TTL_SECONDS, QueueSettings
from lfgqueue.backend.engine import MatchmakingEngine
from lfgqueue.backend.errors import (
    AlreadyQueuedError,
    NotFoundError,
    NotLeaderError,
    NotQueuedError,
    TransientStoreError,
    ValidationError,
)
from lfgqueue.backend.factory import InstanceFactory
from lfgqueue.backend.models import (
    PARTY_FORMING,
    QUEUE_KIND_DUNGEON,
    QUEUE_KIND_RAID,
    Instance,
    InstanceDefinition,
    JoinResult,
    MemberQueueError,
    PartyQueueResult,
    QueueEntry,
    QueueStatus,
)
from lfgqueue.backend.roles import DPS, HEALER, ROLES, TANK, normalize_role
from lfgqueue.backend.state import entry_expiry, utc_now
from lfgqueue.backend.store import (
    HeroDirectory,
    InMemoryQueueStore,
    InstanceRepository,
    PartyRegistry,
    PostgresQueueStore,
    QueueStore,
)

logger = logging.getLogger(__name__)

PARTY_LIMITS = {QUEUE_KIND_DUNGEON: 5, QUEUE_KIND_RAID: 20}


def estimate_wait_seconds(role_counts: dict[str, int], role: str) -> int:
    """Rough wait estimate from the number of queued players per role."""
    if role == TANK:
        return 0
    if role == HEALER:
        return 30 if role_counts.get(TANK, 0) > 0 else 60
    if role == DPS:
        if 3 - role_counts.get(DPS, 0) <= 0:
            return 120
        return 30 if role_counts.get(TANK, 0) > 0 and role_counts.get(HEALER, 0) > 0 else 90
    return 60


@dataclass
class QueueService:
    queue: QueueStore
    parties: PartyRegistry
    heroes: HeroDirectory
    instances: InstanceRepository
    catalogs: dict[str, StaticInstanceCatalog]
    engines: dict[str, MatchmakingEngine]
    queue_ttl_seconds: int = DEFAULT_QUEUE_TTL_SECONDS
    clock: Callable[[], datetime] = field(default=utc_now)

    def join_queue(
        self,
        player_id: str,
        hero_id: str,
        role: str | None,
        item_score: int = 0,
        instance_kind_hint: str | None = None,
        queue_kind: str = QUEUE_KIND_DUNGEON,
    ) -> JoinResult:
        if not player_id or not hero_id:
            raise ValidationError("player_id and hero_id are required")
        if item_score < 0:
            raise ValidationError("item_score must not be negative")
        catalog = self._catalog(queue_kind)
        if instance_kind_hint and catalog.instance_by_id(instance_kind_hint) is None:
            raise ValidationError(f"Unknown {queue_kind} {instance_kind_hint}")
        if self.heroes.get_hero(hero_id) is None:
            raise NotFoundError(f"Hero {hero_id} not found")

        now = self.clock()
        entry = QueueEntry(
            id=str(uuid.uuid4()),
            player_id=player_id,
            hero_id=hero_id,
            role=normalize_role(role),
            original_role=role or "",
            item_score=item_score,
            queued_at=now,
            expires_at=entry_expiry(now, self.queue_ttl_seconds),
            queue_kind=queue_kind,
            instance_kind_hint=instance_kind_hint or None,
        )
        self.queue.add_entry(entry)
        logger.info("Player %s joined the %s queue as %s", player_id, queue_kind, entry.role)
        self._trigger_pass(queue_kind)
        return JoinResult(queue_id=entry.id)

    def queue_party(
        self,
        party_id: str,
        queue_kind: str,
        instance_kind_hint: str | None = None,
        fill_to_max: bool | None = None,
    ) -> PartyQueueResult:
        catalog = self._catalog(queue_kind)
        party = self.parties.get_party(party_id)
        if party is None:
            raise NotFoundError(f"Party {party_id} not found")

        definition: InstanceDefinition | None = None
        if instance_kind_hint:
            definition = catalog.instance_by_id(instance_kind_hint)
            if definition is None:
                raise ValidationError(f"Unknown {queue_kind} {instance_kind_hint}")
        if party.status != PARTY_FORMING:
            raise ValidationError(f"Party {party_id} must be forming to queue, is {party.status}")
        if not party.member_data:
            raise ValidationError(f"Party {party_id} has no members")
        if len(party.member_data) > PARTY_LIMITS[queue_kind]:
            raise ValidationError(f"Party too large for {queue_kind} (max {PARTY_LIMITS[queue_kind]} members)")
        if definition is not None and len(party.member_data) > definition.max_players:
            raise ValidationError(
                f"Party too large for {definition.name}: maximum {definition.max_players} players, "
                f"party has {len(party.member_data)}"
            )

        fill = party.fill_to_max if fill_to_max is None else fill_to_max
        self.parties.mark_party_queued(party_id, queue_kind, instance_kind_hint or None, fill)

        now = self.clock()
        errors: list[MemberQueueError] = []
        queued = 0
        for member in party.member_data:
            hero = self.heroes.get_hero(member.hero_id)
            if hero is None:
                errors.append(MemberQueueError(player_id=member.player_id, error="Hero not found"))
                continue
            role_label = member.role or hero.role
            entry = QueueEntry(
                id=str(uuid.uuid4()),
                player_id=member.player_id,
                hero_id=member.hero_id,
                role=normalize_role(role_label),
                original_role=role_label or "",
                item_score=hero.item_score,
                queued_at=now,
                expires_at=entry_expiry(now, self.queue_ttl_seconds),
                queue_kind=queue_kind,
                instance_kind_hint=instance_kind_hint or None,
                party_id=party_id,
            )
            try:
                self.queue.add_entry(entry, replace_party_id=party_id)
            except AlreadyQueuedError:
                errors.append(
                    MemberQueueError(player_id=member.player_id, error=f"Already in {queue_kind} queue outside this party")
                )
                continue
            queued += 1

        total = len(party.member_data)
        if queued == 0:
            self.parties.set_party_status(party_id, PARTY_FORMING)
            logger.warning("Party %s could not queue any of its %d members", party_id, total)
            return PartyQueueResult(queued_count=0, total=total, errors=tuple(errors))

        logger.info("Party %s queued %d of %d members for %s", party_id, queued, total, queue_kind)
        if errors:
            logger.warning("Party %s queue errors: %s", party_id, errors)
        self._trigger_pass(queue_kind)
        return PartyQueueResult(queued_count=queued, total=total, errors=tuple(errors))

    def leave_queue(self, player_id: str) -> None:
        removed = self.queue.remove_entry_for_player(player_id, self.clock())
        if removed is None:
            raise NotQueuedError(f"Player {player_id} is not queued")
        logger.info("Player %s left the %s queue", player_id, removed.queue_kind)

    def queue_status(self, player_id: str) -> QueueStatus:
        now = self.clock()
        entry = self.queue.get_entry_for_player(player_id, now)
        if entry is None:
            return QueueStatus(in_queue=False)

        counts = Counter(
            queued.role for queued in self.queue.list_entries(entry.queue_kind) if not queued.is_expired(now)
        )
        role_counts = {role: counts.get(role, 0) for role in ROLES}
        return QueueStatus(
            in_queue=True,
            role=entry.role,
            instance_kind_hint=entry.instance_kind_hint,
            queue_kind=entry.queue_kind,
            role_counts=role_counts,
            estimated_wait_seconds=estimate_wait_seconds(role_counts, entry.role),
            queued_at=entry.queued_at.isoformat(),
        )

    def cancel_party_queue(self, party_id: str, requester_id: str) -> int:
        party = self.parties.get_party(party_id)
        if party is None:
            raise NotFoundError(f"Party {party_id} not found")
        if party.leader_id != requester_id:
            raise NotLeaderError("Only the party leader can cancel the queue")
        removed = self.parties.cancel_party_queue(party_id)
        logger.info("Party %s queue cancelled by leader %s, removed %d entries", party_id, requester_id, removed)
        return removed

    def run_matchmaking(self, queue_kind: str) -> int:
        self._catalog(queue_kind)
        return self.engines[queue_kind].run_pass()

    def get_instance(self, instance_id: str) -> Instance:
        instance = self.instances.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance {instance_id} not found")
        return instance

    def available_instances(self, hero_id: str) -> tuple[int, int, dict[str, list[InstanceDefinition]]]:
        """Return the hero's level, item score and qualifying definitions per queue kind."""
        hero = self.heroes.get_hero(hero_id)
        if hero is None:
            raise NotFoundError(f"Hero {hero_id} not found")
        available = {
            queue_kind: catalog.eligible_instances_for_hero(hero.level, hero.item_score)
            for queue_kind, catalog in self.catalogs.items()
        }
        return hero.level, hero.item_score, available

    def _catalog(self, queue_kind: str) -> StaticInstanceCatalog:
        catalog = self.catalogs.get(queue_kind)
        if catalog is None:
            raise ValidationError(f"queue_kind must be one of {', '.join(sorted(self.catalogs))}")
        return catalog

    def _trigger_pass(self, queue_kind: str) -> int:
        try:
            return self.engines[queue_kind].run_pass()
        except TransientStoreError as exc:
            logger.warning("Matchmaking pass for %s aborted, retrying on next event: %s", queue_kind, exc)
            return 0


def build_service(
    store: InMemoryQueueStore | PostgresQueueStore,
    settings: QueueSettings | None = None,
) -> QueueService:
    """Wire a service and one matchmaking engine per queue kind around ``store``.

    ``store`` must implement QueueStore, PartyRegistry, HeroDirectory and
    InstanceRepository, as both bundled backends do.
    """
    launch_dungeon = settings.launch_dungeon_id if settings is not None else DEFAULT_LAUNCH_DUNGEON
    launch_raid = settings.launch_raid_id if settings is not None else DEFAULT_LAUNCH_RAID
    ttl = settings.queue_ttl_seconds if settings is not None else DEFAULT_QUEUE_TTL_SECONDS

    catalogs = {
        QUEUE_KIND_DUNGEON: dungeon_catalog(launch_dungeon),
        QUEUE_KIND_RAID: raid_catalog(launch_raid),
    }
    factory = InstanceFactory(heroes=store, queue=store)
    engines = {
        queue_kind: MatchmakingEngine(
            queue_kind=queue_kind,
            queue=store,
            parties=store,
            heroes=store,
            catalog=catalog,
            factory=factory,
        )
        for queue_kind, catalog in catalogs.items()
    }
    return QueueService(
        queue=store,
        parties=store,
        heroes=store,
        instances=store,
        catalogs=catalogs,
        engines=engines,
        queue_ttl_seconds=ttl,
    )
