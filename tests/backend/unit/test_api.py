import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from lfgqueue.backend.api import create_app
from lfgqueue.backend.models import HeroRecord, Party, PartyMember
from lfgqueue.backend.service import build_service
from lfgqueue.backend.store import InMemoryQueueStore


def _client(*heroes: tuple[str, int]) -> tuple[TestClient, InMemoryQueueStore]:
    store = InMemoryQueueStore()
    for player_id, level in heroes:
        store.put_hero(
            HeroRecord(id=f"hero-{player_id}", name=player_id.title(), role="mage", level=level, item_score=300)
        )
    return TestClient(create_app(service=build_service(store))), store


def _join(client: TestClient, player_id: str, **extra):
    payload = {"player_id": player_id, "hero_id": f"hero-{player_id}", "role": "mage", "item_score": 300}
    payload.update(extra)
    return client.post("/api/queue", json=payload)


def test_post_queue_returns_queue_id_and_status() -> None:
    client, _ = _client(("p1", 1))

    response = _join(client, "p1")

    assert response.status_code == 200
    assert response.json()["queue_id"]
    status = client.get("/api/queue/status", params={"player_id": "p1"}).json()
    assert status["in_queue"] is True
    assert status["role"] == "dps"
    assert status["role_counts"] == {"tank": 0, "healer": 0, "dps": 1}
    assert status["estimated_wait_seconds"] == 90


def test_post_queue_twice_is_conflict() -> None:
    client, _ = _client(("p1", 1))
    _join(client, "p1")

    response = _join(client, "p1")

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "already_queued"


def test_post_queue_maps_validation_and_missing_hero() -> None:
    client, _ = _client(("p1", 1))

    assert _join(client, "p1", queue_kind="arena").status_code == 400
    assert _join(client, "ghost").status_code == 404
    assert client.post("/api/queue", json={"player_id": "p1"}).status_code == 422


def test_delete_queue_leaves_once() -> None:
    client, _ = _client(("p1", 1))
    _join(client, "p1")

    response = client.delete("/api/queue/p1")

    assert response.status_code == 200
    assert response.json() == {"player_id": "p1", "left": True}
    assert client.delete("/api/queue/p1").status_code == 409
    assert client.get("/api/queue/status", params={"player_id": "p1"}).json() == {"in_queue": False}


def test_matched_players_can_load_their_instance() -> None:
    client, store = _client(("p1", 12), ("p2", 12))
    _join(client, "p1")
    _join(client, "p2")

    hero = store.get_hero("hero-p1")
    assert hero is not None and hero.active_instance is not None
    response = client.get(f"/api/instances/{hero.active_instance.instance_id}")

    assert response.status_code == 200
    instance = response.json()["instance"]
    assert instance["instance_kind_id"] == "goblin_cave"
    assert [participant["player_id"] for participant in instance["participants"]] == ["p1", "p2"]
    assert instance["stage_definitions"][-1]["is_boss"] is True
    assert client.get("/api/instances/missing").status_code == 404


def test_party_queue_and_leader_cancel() -> None:
    client, store = _client(("p1", 1), ("p2", 1))
    store.put_party(
        Party(
            id="A",
            leader_id="p1",
            members=("p1", "p2"),
            member_data=(
                PartyMember(player_id="p1", hero_id="hero-p1", display_name="P1", role="mage"),
                PartyMember(player_id="p2", hero_id="hero-p2", display_name="P2", role="mage"),
            ),
        )
    )

    queued = client.post("/api/parties/A/queue", json={"queue_kind": "dungeon"})

    assert queued.status_code == 200
    assert queued.json() == {"queued_count": 2, "total": 2, "errors": []}
    assert client.post("/api/parties/A/cancel-queue", json={"requester_id": "p2"}).status_code == 403
    cancelled = client.post("/api/parties/A/cancel-queue", json={"requester_id": "p1"})
    assert cancelled.json() == {"removed_count": 2}
    assert client.post("/api/parties/A/cancel-queue", json={"requester_id": "p1"}).status_code == 409
    assert client.post("/api/parties/missing/queue", json={"queue_kind": "dungeon"}).status_code == 404


def test_run_matchmaking_endpoint() -> None:
    client, _ = _client(("p1", 1))

    assert client.post("/api/matchmaking/dungeon/run").json() == {"groups_formed": 0}
    assert client.post("/api/matchmaking/arena/run").status_code == 400


def test_available_instances_endpoint() -> None:
    client, _ = _client(("p1", 12))

    response = client.get("/api/instances/available/hero-p1")

    assert response.status_code == 200
    data = response.json()
    assert data["hero_level"] == 12
    assert data["item_score"] == 300
    assert [definition["id"] for definition in data["available"]["dungeon"]] == ["goblin_cave"]
    assert data["available"]["raid"] == []
