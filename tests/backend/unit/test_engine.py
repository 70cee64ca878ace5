from dataclasses import replace
from datetime import datetime, timedelta, timezone
import threading

from lfgqueue.backend.catalog import dungeon_catalog
from lfgqueue.backend.engine import MatchmakingEngine, group_by_party, individuals
from lfgqueue.backend.factory import InstanceFactory
from lfgqueue.backend.models import (
    PARTY_IN_INSTANCE,
    PARTY_QUEUED,
    CommitPlan,
    HeroRecord,
    Party,
    PartyMember,
    QueueEntry,
)
from lfgqueue.backend.roles import normalize_role
from lfgqueue.backend.store import InMemoryQueueStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _RecordingStore(InMemoryQueueStore):
    def __post_init__(self) -> None:
        super().__post_init__()
        self.commits: list[CommitPlan] = []

    def apply_commit(self, plan: CommitPlan) -> None:
        super().apply_commit(plan)
        self.commits.append(plan)


def _engine(store: InMemoryQueueStore) -> MatchmakingEngine:
    return MatchmakingEngine(
        queue_kind="dungeon",
        queue=store,
        parties=store,
        heroes=store,
        catalog=dungeon_catalog(),
        factory=InstanceFactory(heroes=store, queue=store),
        clock=lambda: NOW,
    )


def _hero(store: InMemoryQueueStore, player_id: str, role: str = "mage", level: int = 12) -> str:
    hero_id = f"hero-{player_id}"
    store.put_hero(HeroRecord(id=hero_id, name=player_id.title(), role=role, level=level, item_score=300))
    return hero_id


def _queue(
    store: InMemoryQueueStore,
    player_id: str,
    role: str = "mage",
    party_id: str | None = None,
    hint: str | None = None,
    queued_at: datetime = NOW,
    with_hero: bool = True,
    level: int = 12,
) -> QueueEntry:
    hero_id = _hero(store, player_id, role=role, level=level) if with_hero else f"hero-{player_id}"
    entry = QueueEntry(
        id=f"q-{player_id}",
        player_id=player_id,
        hero_id=hero_id,
        role=normalize_role(role),
        original_role=role,
        item_score=300,
        queued_at=queued_at,
        expires_at=queued_at + timedelta(minutes=30),
        instance_kind_hint=hint,
        party_id=party_id,
    )
    return store.add_entry(entry)


def _party(
    store: InMemoryQueueStore,
    party_id: str,
    player_ids: list[str],
    fill_to_max: bool = True,
    hint: str | None = None,
) -> None:
    store.put_party(
        Party(
            id=party_id,
            leader_id=player_ids[0],
            members=tuple(player_ids),
            member_data=tuple(
                PartyMember(player_id=pid, hero_id=f"hero-{pid}", display_name=pid.title(), role="mage", level=12)
                for pid in player_ids
            ),
            status=PARTY_QUEUED,
            fill_to_max=fill_to_max,
            queue_kind="dungeon",
            instance_kind_hint=hint,
        )
    )
    for player_id in player_ids:
        _queue(store, player_id, party_id=party_id, hint=hint)


def _remaining(store: InMemoryQueueStore) -> list[str]:
    return [entry.player_id for entry in store.list_entries("dungeon")]


def _roster(store: InMemoryQueueStore, player_id: str) -> list[str]:
    hero = store.get_hero(f"hero-{player_id}")
    assert hero is not None and hero.active_instance is not None
    instance = store.get_instance(hero.active_instance.instance_id)
    assert instance is not None
    return [participant.player_id for participant in instance.participants]


def test_group_helpers_split_party_and_solo_entries_in_queue_order() -> None:
    store = InMemoryQueueStore()
    _queue(store, "solo-1")
    _queue(store, "a1", party_id="A")
    _queue(store, "solo-2")
    _queue(store, "a2", party_id="A")

    entries = store.list_entries("dungeon")

    assert {party_id: [e.player_id for e in members] for party_id, members in group_by_party(entries).items()} == {
        "A": ["a1", "a2"]
    }
    assert [entry.player_id for entry in individuals(entries)] == ["solo-1", "solo-2"]


def test_run_pass_on_empty_queue_returns_zero_without_writes() -> None:
    store = _RecordingStore()

    assert _engine(store).run_pass() == 0
    assert store.commits == []


def test_filling_party_absorbs_solo_players_into_one_full_group() -> None:
    store = InMemoryQueueStore()
    _party(store, "A", ["a1", "a2"], fill_to_max=True)
    for player_id in ("s1", "s2", "s3"):
        _queue(store, player_id)

    groups = _engine(store).run_pass()

    assert groups == 1
    assert _remaining(store) == []
    assert sorted(_roster(store, "a1")) == ["a1", "a2", "s1", "s2", "s3"]
    party = store.get_party("A")
    assert party is not None
    assert party.status == PARTY_IN_INSTANCE


def test_lone_single_member_party_stays_queued() -> None:
    store = InMemoryQueueStore()
    _party(store, "B", ["b1"])

    assert _engine(store).run_pass() == 0
    assert _remaining(store) == ["b1"]
    party = store.get_party("B")
    assert party is not None
    assert party.status == PARTY_QUEUED


def test_complete_party_matches_first_and_solo_group_forms_in_same_pass() -> None:
    store = InMemoryQueueStore()
    _party(store, "C", ["c1", "c2"], fill_to_max=False)
    for player_id in ("s1", "s2", "s3"):
        _queue(store, player_id)

    groups = _engine(store).run_pass()

    assert groups == 2
    assert sorted(_roster(store, "c1")) == ["c1", "c2"]
    assert sorted(_roster(store, "s1")) == ["s1", "s2", "s3"]
    assert _remaining(store) == []


def test_full_party_matches_even_when_it_wants_to_fill() -> None:
    store = InMemoryQueueStore()
    _party(store, "F", ["f1", "f2", "f3", "f4", "f5"], fill_to_max=True)

    assert _engine(store).run_pass() == 1
    assert len(_roster(store, "f1")) == 5


def test_party_below_minimum_takes_just_enough_individuals() -> None:
    store = InMemoryQueueStore()
    _party(store, "D", ["d1"], fill_to_max=False)
    _queue(store, "s1")

    assert _engine(store).run_pass() == 1
    assert sorted(_roster(store, "d1")) == ["d1", "s1"]


def test_second_filling_party_waits_when_individuals_are_used_up() -> None:
    store = InMemoryQueueStore()
    _party(store, "X", ["x1", "x2"])
    _party(store, "Y", ["y1", "y2"])
    for player_id in ("s1", "s2", "s3"):
        _queue(store, player_id)

    assert _engine(store).run_pass() == 1
    assert sorted(_roster(store, "x1")) == ["s1", "s2", "s3", "x1", "x2"]
    assert _remaining(store) == ["y1", "y2"]


def test_individuals_are_batched_up_to_max_players() -> None:
    store = InMemoryQueueStore()
    for number in range(7):
        _queue(store, f"s{number}")

    assert _engine(store).run_pass() == 2
    assert _roster(store, "s0") == ["s0", "s1", "s2", "s3", "s4"]
    assert _roster(store, "s5") == ["s5", "s6"]
    assert _remaining(store) == []


def test_single_individual_waits_for_company() -> None:
    store = _RecordingStore()
    _queue(store, "s1")

    assert _engine(store).run_pass() == 0
    assert store.commits == []
    assert _remaining(store) == ["s1"]


def test_hydration_failure_below_minimum_aborts_whole_commit() -> None:
    store = InMemoryQueueStore()
    _queue(store, "s1")
    _queue(store, "ghost", with_hero=False)

    assert _engine(store).run_pass() == 0
    assert _remaining(store) == ["s1", "ghost"]
    hero = store.get_hero("hero-s1")
    assert hero is not None
    assert hero.active_instance is None


def test_missing_hero_is_dropped_when_group_still_meets_minimum() -> None:
    store = InMemoryQueueStore()
    _queue(store, "s1")
    _queue(store, "ghost", with_hero=False)
    _queue(store, "s2")

    assert _engine(store).run_pass() == 1
    assert _roster(store, "s1") == ["s1", "s2"]
    assert _remaining(store) == []


def test_expired_entries_are_evicted_before_matching() -> None:
    store = InMemoryQueueStore()
    _queue(store, "stale", queued_at=NOW - timedelta(hours=1))
    _queue(store, "fresh")

    assert _engine(store).run_pass() == 0
    assert _remaining(store) == ["fresh"]


def test_hinted_instance_is_used_without_eligibility_check() -> None:
    store = InMemoryQueueStore()
    for player_id in ("s1", "s2", "s3"):
        _queue(store, player_id, hint="ancient_catacombs", level=1)

    assert _engine(store).run_pass() == 1
    hero = store.get_hero("hero-s1")
    assert hero is not None and hero.active_instance is not None
    instance = store.get_instance(hero.active_instance.instance_id)
    assert instance is not None
    assert instance.instance_kind_id == "ancient_catacombs"
    assert instance.max_stages == 4


def test_no_eligible_instance_forms_no_groups() -> None:
    store = InMemoryQueueStore()
    _queue(store, "s1", level=1)
    _queue(store, "s2", level=1)

    assert _engine(store).run_pass() == 0
    assert _remaining(store) == ["s1", "s2"]


def test_resolve_target_prefers_launch_instance_among_hints() -> None:
    store = InMemoryQueueStore()
    first = _queue(store, "s1", hint="demon_ruins")
    second = _queue(store, "s2", hint="goblin_cave")

    definition = _engine(store).resolve_target([first, second])

    assert definition is not None
    assert definition.id == "goblin_cave"


def test_party_with_entries_for_non_members_is_left_queued() -> None:
    store = InMemoryQueueStore()
    _party(store, "P", ["p1", "p2"], fill_to_max=False)
    _queue(store, "intruder", party_id="P")

    assert _engine(store).run_pass() == 0
    assert sorted(_remaining(store)) == ["intruder", "p1", "p2"]


def test_party_fill_is_sized_by_the_party_hinted_instance() -> None:
    store = InMemoryQueueStore()
    _party(store, "P", ["p1"], fill_to_max=False, hint="ancient_catacombs")
    _queue(store, "s1", hint="goblin_cave")
    _queue(store, "s2")

    assert _engine(store).run_pass() == 1
    assert _remaining(store) == []
    assert _roster(store, "p1") == ["p1", "s1", "s2"]
    hero = store.get_hero("hero-p1")
    assert hero is not None and hero.active_instance is not None
    instance = store.get_instance(hero.active_instance.instance_id)
    assert instance is not None
    assert instance.instance_kind_id == "ancient_catacombs"


def test_complete_party_is_checked_against_its_hinted_instance() -> None:
    store = InMemoryQueueStore()
    _party(store, "R", [f"r{number}" for number in range(6)], hint="demon_ruins")
    _queue(store, "s1", hint="goblin_cave")

    assert _engine(store).run_pass() == 1
    assert len(_roster(store, "r0")) == 6
    assert _remaining(store) == ["s1"]


def test_individual_batch_is_sized_by_the_first_player_hint() -> None:
    store = InMemoryQueueStore()
    _queue(store, "s0", hint="demon_ruins")
    _queue(store, "s1", hint="goblin_cave")
    for number in range(2, 6):
        _queue(store, f"s{number}")

    assert _engine(store).run_pass() == 1
    assert _roster(store, "s0") == ["s0", "s1", "s2", "s3", "s4", "s5"]


def test_party_entry_with_swapped_hero_is_left_queued() -> None:
    store = InMemoryQueueStore()
    _party(store, "P", ["p1", "p2"], fill_to_max=False)
    party = store.get_party("P")
    assert party is not None
    store.put_party(
        replace(party, member_data=(party.member_data[0], replace(party.member_data[1], hero_id="hero-other")))
    )

    assert _engine(store).run_pass() == 0
    assert _remaining(store) == ["p1", "p2"]
    hero = store.get_hero("hero-p2")
    assert hero is not None
    assert hero.active_instance is None


def test_concurrent_passes_never_share_an_entry() -> None:
    store = InMemoryQueueStore()
    player_ids = [f"s{number}" for number in range(12)]
    for player_id in player_ids:
        _queue(store, player_id)

    engines = [_engine(store) for _ in range(4)]
    barrier = threading.Barrier(len(engines))
    results: list[int] = []

    def run(engine: MatchmakingEngine) -> None:
        barrier.wait()
        results.append(engine.run_pass())

    threads = [threading.Thread(target=run, args=(engine,)) for engine in engines]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    rosters: dict[str, list[str]] = {}
    for player_id in player_ids:
        hero = store.get_hero(f"hero-{player_id}")
        assert hero is not None
        if hero.active_instance is not None:
            rosters[hero.active_instance.instance_id] = _roster(store, player_id)

    placed = [player_id for roster in rosters.values() for player_id in roster]
    assert len(placed) == len(set(placed))
    assert len(placed) + len(_remaining(store)) == len(player_ids)
    assert sum(results) == len(rosters)
    for roster in rosters.values():
        assert 2 <= len(roster) <= 5
