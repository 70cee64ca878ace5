"""Persistence interfaces and implementations for queue, party, hero and instance records."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime
import json
import logging
import threading
from typing import Any, Protocol

from lfgqueue.backend.errors import AlreadyQueuedError, CommitAborted, NotFoundError, NotQueuedError, TransientStoreError
from lfgqueue.backend.models import (
    PARTY_FORMING,
    PARTY_IN_INSTANCE,
    PARTY_QUEUED,
    ActiveInstance,
    CommitPlan,
    HeroRecord,
    Instance,
    Participant,
    Party,
    PartyMember,
    QueueEntry,
    StageDefinition,
)
from lfgqueue.backend.state import utc_now

logger = logging.getLogger(__name__)


class QueueStore(Protocol):
    def add_entry(self, entry: QueueEntry, replace_party_id: str | None = None) -> QueueEntry:
        """Store a new entry; raise AlreadyQueuedError if the player already holds a live one.

        A live entry belonging to ``replace_party_id`` is replaced instead.
        """

    def get_entry_for_player(self, player_id: str, now: datetime) -> QueueEntry | None:
        """Return the player's live entry, if any."""

    def remove_entry_for_player(self, player_id: str, now: datetime) -> QueueEntry | None:
        """Delete the player's entry; return it only if it was still live."""

    def list_entries(self, queue_kind: str) -> list[QueueEntry]:
        """Return every entry of a queue in queue order."""

    def evict_expired(self, queue_kind: str, now: datetime) -> int:
        """Delete entries whose expiry is at or before ``now``."""

    def apply_commit(self, plan: CommitPlan) -> None:
        """Apply every write of a committed group as one unit or raise CommitAborted."""


class PartyRegistry(Protocol):
    def get_party(self, party_id: str) -> Party | None:
        """Return the party record."""

    def set_party_status(self, party_id: str, status: str) -> None:
        """Overwrite the party status."""

    def mark_party_queued(
        self,
        party_id: str,
        queue_kind: str,
        instance_kind_hint: str | None,
        fill_to_max: bool,
    ) -> None:
        """Move the party to queued and store its queue preferences."""

    def cancel_party_queue(self, party_id: str) -> int:
        """Drop the party's entries and reset it to forming; raise NotQueuedError unless queued."""


class HeroDirectory(Protocol):
    def get_hero(self, hero_id: str) -> HeroRecord | None:
        """Return the hero's current stats."""

    def set_active_instance(self, hero_id: str, pointer: ActiveInstance | None) -> None:
        """Point the hero's session at a running instance."""


class InstanceRepository(Protocol):
    def create_instance(self, instance: Instance) -> None:
        """Persist a new instance."""

    def get_instance(self, instance_id: str) -> Instance | None:
        """Return a stored instance."""


@dataclass
class InMemoryQueueStore:
    """Single-process document store implementing every collaborator interface.

    All reads and writes go through one re-entrant lock, so a commit is
    atomic relative to joins, leaves and other commits.
    """

    def __post_init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, QueueEntry] = {}
        self._entry_by_player: dict[str, str] = {}
        self._parties: dict[str, Party] = {}
        self._heroes: dict[str, HeroRecord] = {}
        self._instances: dict[str, Instance] = {}

    def put_hero(self, hero: HeroRecord) -> None:
        with self._lock:
            self._heroes[hero.id] = hero

    def put_party(self, party: Party) -> None:
        with self._lock:
            self._parties[party.id] = party

    def add_entry(self, entry: QueueEntry, replace_party_id: str | None = None) -> QueueEntry:
        with self._lock:
            existing_id = self._entry_by_player.get(entry.player_id)
            if existing_id is not None:
                existing = self._entries[existing_id]
                live = not existing.is_expired(entry.queued_at)
                if live and (replace_party_id is None or existing.party_id != replace_party_id):
                    raise AlreadyQueuedError(f"Player {entry.player_id} is already queued")
                self._drop_entry(existing_id)
            self._entries[entry.id] = entry
            self._entry_by_player[entry.player_id] = entry.id
            return entry

    def get_entry_for_player(self, player_id: str, now: datetime) -> QueueEntry | None:
        with self._lock:
            return self._live_entry(player_id, now=now)

    def remove_entry_for_player(self, player_id: str, now: datetime) -> QueueEntry | None:
        with self._lock:
            entry_id = self._entry_by_player.get(player_id)
            if entry_id is None:
                return None
            entry = self._drop_entry(entry_id)
            return None if entry.is_expired(now) else entry

    def list_entries(self, queue_kind: str) -> list[QueueEntry]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.queue_kind == queue_kind]

    def evict_expired(self, queue_kind: str, now: datetime) -> int:
        with self._lock:
            expired = [
                entry.id for entry in self._entries.values() if entry.queue_kind == queue_kind and entry.is_expired(now)
            ]
            for entry_id in expired:
                self._drop_entry(entry_id)
            return len(expired)

    def apply_commit(self, plan: CommitPlan) -> None:
        with self._lock:
            missing = [entry_id for entry_id in plan.entry_ids if entry_id not in self._entries]
            if missing:
                raise CommitAborted(f"Queue entries already consumed: {', '.join(missing)}")
            if plan.party_id is not None and plan.party_id not in self._parties:
                raise CommitAborted(f"Party {plan.party_id} no longer exists")
            unknown_heroes = [hero_id for hero_id in plan.hero_ids if hero_id not in self._heroes]
            if unknown_heroes:
                raise CommitAborted(f"Heroes disappeared before commit: {', '.join(unknown_heroes)}")

            for entry_id in plan.entry_ids:
                self._drop_entry(entry_id)
            self._instances[plan.instance.id] = plan.instance
            if plan.party_id is not None:
                self._parties[plan.party_id] = replace(self._parties[plan.party_id], status=PARTY_IN_INSTANCE)
            pointer = ActiveInstance(kind=plan.instance.kind, instance_id=plan.instance.id)
            for hero_id in plan.hero_ids:
                self._heroes[hero_id] = replace(self._heroes[hero_id], active_instance=pointer)

    def get_party(self, party_id: str) -> Party | None:
        with self._lock:
            return self._parties.get(party_id)

    def set_party_status(self, party_id: str, status: str) -> None:
        with self._lock:
            party = self._require_party(party_id)
            self._parties[party_id] = replace(party, status=status)

    def mark_party_queued(
        self,
        party_id: str,
        queue_kind: str,
        instance_kind_hint: str | None,
        fill_to_max: bool,
    ) -> None:
        with self._lock:
            party = self._require_party(party_id)
            self._parties[party_id] = replace(
                party,
                status=PARTY_QUEUED,
                queue_kind=queue_kind,
                instance_kind_hint=instance_kind_hint,
                fill_to_max=fill_to_max,
            )

    def cancel_party_queue(self, party_id: str) -> int:
        with self._lock:
            party = self._require_party(party_id)
            if party.status != PARTY_QUEUED:
                raise NotQueuedError(f"Party {party_id} is not queued")
            entry_ids = [entry.id for entry in self._entries.values() if entry.party_id == party_id]
            for entry_id in entry_ids:
                self._drop_entry(entry_id)
            self._parties[party_id] = replace(party, status=PARTY_FORMING, queue_kind=None, instance_kind_hint=None)
            return len(entry_ids)

    def get_hero(self, hero_id: str) -> HeroRecord | None:
        with self._lock:
            return self._heroes.get(hero_id)

    def set_active_instance(self, hero_id: str, pointer: ActiveInstance | None) -> None:
        with self._lock:
            hero = self._heroes.get(hero_id)
            if hero is None:
                raise NotFoundError(f"Hero {hero_id} not found")
            self._heroes[hero_id] = replace(hero, active_instance=pointer)

    def create_instance(self, instance: Instance) -> None:
        with self._lock:
            self._instances[instance.id] = instance

    def get_instance(self, instance_id: str) -> Instance | None:
        with self._lock:
            return self._instances.get(instance_id)

    def _live_entry(self, player_id: str, now: datetime) -> QueueEntry | None:
        entry_id = self._entry_by_player.get(player_id)
        if entry_id is None:
            return None
        entry = self._entries[entry_id]
        if entry.is_expired(now):
            return None
        return entry

    def _drop_entry(self, entry_id: str) -> QueueEntry:
        entry = self._entries.pop(entry_id)
        if self._entry_by_player.get(entry.player_id) == entry_id:
            del self._entry_by_player[entry.player_id]
        return entry

    def _require_party(self, party_id: str) -> Party:
        party = self._parties.get(party_id)
        if party is None:
            raise NotFoundError(f"Party {party_id} not found")
        return party


ENTRY_COLUMNS = (
    "id, player_id, hero_id, role, original_role, item_score, queued_at, expires_at, "
    "queue_kind, instance_kind_hint, party_id"
)
PARTY_COLUMNS = "id, leader_id, members, member_data, status, fill_to_max, queue_kind, instance_kind_hint"
HERO_COLUMNS = "id, name, role, level, hp, max_hp, item_score, active_instance"
INSTANCE_COLUMNS = (
    "id, instance_kind_id, kind, difficulty, status, participants, current_stage, max_stages, "
    "stage_definitions, organizer_id, created_at"
)


def _json_value(raw: Any) -> Any:
    if isinstance(raw, (str, bytes)):
        return json.loads(raw)
    return raw


def _entry_from_row(row: tuple) -> QueueEntry:
    (entry_id, player_id, hero_id, role, original_role, item_score, queued_at, expires_at,
     queue_kind, instance_kind_hint, party_id) = row
    return QueueEntry(
        id=entry_id,
        player_id=player_id,
        hero_id=hero_id,
        role=role,
        original_role=original_role,
        item_score=int(item_score),
        queued_at=queued_at,
        expires_at=expires_at,
        queue_kind=queue_kind,
        instance_kind_hint=instance_kind_hint,
        party_id=party_id,
    )


def _party_from_row(row: tuple) -> Party:
    party_id, leader_id, members, member_data, status, fill_to_max, queue_kind, instance_kind_hint = row
    return Party(
        id=party_id,
        leader_id=leader_id,
        members=tuple(_json_value(members)),
        member_data=tuple(PartyMember(**member) for member in _json_value(member_data)),
        status=status,
        fill_to_max=bool(fill_to_max),
        queue_kind=queue_kind,
        instance_kind_hint=instance_kind_hint,
    )


def _hero_from_row(row: tuple) -> HeroRecord:
    hero_id, name, role, level, hp, max_hp, item_score, active_instance = row
    pointer = _json_value(active_instance) if active_instance is not None else None
    return HeroRecord(
        id=hero_id,
        name=name,
        role=role,
        level=int(level or 1),
        hp=hp,
        max_hp=max_hp,
        item_score=int(item_score or 0),
        active_instance=ActiveInstance(**pointer) if pointer else None,
    )


def _instance_from_row(row: tuple) -> Instance:
    (instance_id, instance_kind_id, kind, difficulty, status, participants, current_stage, max_stages,
     stage_definitions, organizer_id, created_at) = row
    return Instance(
        id=instance_id,
        instance_kind_id=instance_kind_id,
        kind=kind,
        difficulty=difficulty,
        status=status,
        participants=tuple(Participant(**participant) for participant in _json_value(participants)),
        current_stage=int(current_stage),
        max_stages=int(max_stages),
        stage_definitions=tuple(StageDefinition(**stage) for stage in _json_value(stage_definitions)),
        organizer_id=organizer_id,
        created_at=created_at if isinstance(created_at, str) else created_at.isoformat(),
    )


def _insert_instance(cur: Any, instance: Instance) -> None:
    cur.execute(
        f"""
        INSERT INTO instances ({INSTANCE_COLUMNS})
        VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s::jsonb, %s, %s)
        """,
        (
            instance.id,
            instance.instance_kind_id,
            instance.kind,
            instance.difficulty,
            instance.status,
            json.dumps([asdict(participant) for participant in instance.participants]),
            instance.current_stage,
            instance.max_stages,
            json.dumps([asdict(stage) for stage in instance.stage_definitions]),
            instance.organizer_id,
            instance.created_at,
        ),
    )


@dataclass
class PostgresQueueStore:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    @contextmanager
    def _session(self) -> Iterator[Any]:
        import psycopg

        try:
            with self._connect() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            logger.error("Queue store unavailable: %s", exc)
            raise TransientStoreError(f"Queue store unavailable: {exc}") from exc

    def add_entry(self, entry: QueueEntry, replace_party_id: str | None = None) -> QueueEntry:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM queue_entries
                    WHERE player_id = %s
                      AND (expires_at <= %s OR (party_id IS NOT NULL AND party_id = %s))
                    """,
                    (entry.player_id, entry.queued_at, replace_party_id),
                )
                cur.execute(
                    f"""
                    INSERT INTO queue_entries ({ENTRY_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (player_id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        entry.id,
                        entry.player_id,
                        entry.hero_id,
                        entry.role,
                        entry.original_role,
                        entry.item_score,
                        entry.queued_at,
                        entry.expires_at,
                        entry.queue_kind,
                        entry.instance_kind_hint,
                        entry.party_id,
                    ),
                )
                inserted = cur.fetchone()
            if inserted is None:
                conn.rollback()
                raise AlreadyQueuedError(f"Player {entry.player_id} is already queued")
            conn.commit()
        return entry

    def get_entry_for_player(self, player_id: str, now: datetime) -> QueueEntry | None:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {ENTRY_COLUMNS} FROM queue_entries WHERE player_id = %s AND expires_at > %s",
                    (player_id, now),
                )
                row = cur.fetchone()
        return _entry_from_row(row) if row is not None else None

    def remove_entry_for_player(self, player_id: str, now: datetime) -> QueueEntry | None:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM queue_entries WHERE player_id = %s RETURNING {ENTRY_COLUMNS}",
                    (player_id,),
                )
                row = cur.fetchone()
            conn.commit()
        if row is None:
            return None
        entry = _entry_from_row(row)
        return None if entry.is_expired(now) else entry

    def list_entries(self, queue_kind: str) -> list[QueueEntry]:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {ENTRY_COLUMNS} FROM queue_entries WHERE queue_kind = %s ORDER BY seq",
                    (queue_kind,),
                )
                rows = cur.fetchall()
        return [_entry_from_row(row) for row in rows]

    def evict_expired(self, queue_kind: str, now: datetime) -> int:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM queue_entries WHERE queue_kind = %s AND expires_at <= %s",
                    (queue_kind, now),
                )
                evicted = cur.rowcount
            conn.commit()
        return max(evicted, 0)

    def apply_commit(self, plan: CommitPlan) -> None:
        instance = plan.instance
        now = utc_now()
        pointer = json.dumps({"kind": instance.kind, "instance_id": instance.id})
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM queue_entries WHERE id = ANY(%s) RETURNING id",
                    (list(plan.entry_ids),),
                )
                claimed = cur.fetchall()
                if len(claimed) != len(plan.entry_ids):
                    conn.rollback()
                    raise CommitAborted(
                        f"Only {len(claimed)} of {len(plan.entry_ids)} queue entries could be claimed"
                    )
                _insert_instance(cur, instance)
                if plan.party_id is not None:
                    cur.execute(
                        "UPDATE parties SET status = %s, updated_at = %s WHERE id = %s",
                        (PARTY_IN_INSTANCE, now, plan.party_id),
                    )
                for hero_id in plan.hero_ids:
                    cur.execute(
                        "UPDATE heroes SET active_instance = %s::jsonb, updated_at = %s WHERE id = %s",
                        (pointer, now, hero_id),
                    )
            conn.commit()

    def get_party(self, party_id: str) -> Party | None:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {PARTY_COLUMNS} FROM parties WHERE id = %s", (party_id,))
                row = cur.fetchone()
        return _party_from_row(row) if row is not None else None

    def set_party_status(self, party_id: str, status: str) -> None:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE parties SET status = %s, updated_at = %s WHERE id = %s",
                    (status, utc_now(), party_id),
                )
            conn.commit()

    def mark_party_queued(
        self,
        party_id: str,
        queue_kind: str,
        instance_kind_hint: str | None,
        fill_to_max: bool,
    ) -> None:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE parties
                    SET status = %s, queue_kind = %s, instance_kind_hint = %s, fill_to_max = %s, updated_at = %s
                    WHERE id = %s
                    """,
                    (PARTY_QUEUED, queue_kind, instance_kind_hint, fill_to_max, utc_now(), party_id),
                )
            conn.commit()

    def cancel_party_queue(self, party_id: str) -> int:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE parties
                    SET status = %s, queue_kind = NULL, instance_kind_hint = NULL, updated_at = %s
                    WHERE id = %s AND status = %s
                    RETURNING id
                    """,
                    (PARTY_FORMING, utc_now(), party_id, PARTY_QUEUED),
                )
                if cur.fetchone() is None:
                    conn.rollback()
                    raise NotQueuedError(f"Party {party_id} is not queued")
                cur.execute("DELETE FROM queue_entries WHERE party_id = %s", (party_id,))
                removed = cur.rowcount
            conn.commit()
        return max(removed, 0)

    def get_hero(self, hero_id: str) -> HeroRecord | None:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {HERO_COLUMNS} FROM heroes WHERE id = %s", (hero_id,))
                row = cur.fetchone()
        return _hero_from_row(row) if row is not None else None

    def set_active_instance(self, hero_id: str, pointer: ActiveInstance | None) -> None:
        payload = json.dumps(asdict(pointer)) if pointer is not None else None
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE heroes SET active_instance = %s::jsonb, updated_at = %s WHERE id = %s",
                    (payload, utc_now(), hero_id),
                )
            conn.commit()

    def create_instance(self, instance: Instance) -> None:
        with self._session() as conn:
            with conn.cursor() as cur:
                _insert_instance(cur, instance)
            conn.commit()

    def get_instance(self, instance_id: str) -> Instance | None:
        with self._session() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {INSTANCE_COLUMNS} FROM instances WHERE id = %s", (instance_id,))
                row = cur.fetchone()
        return _instance_from_row(row) if row is not None else None


def create_store(database_url: str | None) -> InMemoryQueueStore | PostgresQueueStore:
    if database_url:
        return PostgresQueueStore(database_url=database_url)
    return InMemoryQueueStore()
