"""FastAPI endpoints for queue joins, party queueing and instance lookup."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .config import load_settings
from .errors import (
    ConflictError,
    NotFoundError,
    NotLeaderError,
    QueueError,
    TransientStoreError,
    ValidationError,
)
from .models import QUEUE_KIND_DUNGEON
from .service import QueueService, build_service
from .store import create_store


class JoinQueueRequest(BaseModel):
    player_id: str = Field(min_length=1, max_length=200)
    hero_id: str = Field(min_length=1, max_length=200)
    role: str = Field(default="", max_length=100)
    item_score: int = Field(default=0, ge=0)
    instance_kind_hint: str | None = None
    queue_kind: str = QUEUE_KIND_DUNGEON


class JoinQueueResponse(BaseModel):
    queue_id: str


class LeaveQueueResponse(BaseModel):
    player_id: str
    left: bool


class QueueStatusResponse(BaseModel):
    in_queue: bool
    role: str | None = None
    instance_kind_hint: str | None = None
    queue_kind: str | None = None
    role_counts: dict[str, int] | None = None
    estimated_wait_seconds: int | None = None
    queued_at: str | None = None


class PartyQueueRequest(BaseModel):
    queue_kind: str = Field(min_length=1)
    instance_kind_hint: str | None = None
    fill_to_max: bool | None = None


class MemberQueueErrorModel(BaseModel):
    player_id: str
    error: str


class PartyQueueResponse(BaseModel):
    queued_count: int
    total: int
    errors: list[MemberQueueErrorModel]


class CancelPartyQueueRequest(BaseModel):
    requester_id: str = Field(min_length=1)


class CancelPartyQueueResponse(BaseModel):
    removed_count: int


class MatchmakingRunResponse(BaseModel):
    groups_formed: int


class InstanceResponse(BaseModel):
    instance: dict[str, Any]


class AvailableInstancesResponse(BaseModel):
    hero_level: int
    item_score: int
    available: dict[str, list[dict[str, Any]]]


def _http_error(exc: QueueError) -> HTTPException:
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, NotLeaderError):
        status_code = 403
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ConflictError):
        status_code = 409
    elif isinstance(exc, TransientStoreError):
        status_code = 503
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})


def _default_service() -> QueueService:
    settings = load_settings()
    return build_service(create_store(settings.database_url), settings)


def create_app(service: QueueService | None = None) -> FastAPI:
    app = FastAPI(title="LFG Queue API", version="0.1.0")
    queue_service = service if service is not None else _default_service()
    app.state.queue_service = queue_service

    def get_service() -> QueueService:
        return queue_service

    @app.post("/api/queue", response_model=JoinQueueResponse)
    def join_queue(
        payload: JoinQueueRequest,
        local_service: QueueService = Depends(get_service),
    ) -> JoinQueueResponse:
        try:
            result = local_service.join_queue(
                player_id=payload.player_id,
                hero_id=payload.hero_id,
                role=payload.role,
                item_score=payload.item_score,
                instance_kind_hint=payload.instance_kind_hint,
                queue_kind=payload.queue_kind,
            )
        except QueueError as exc:
            raise _http_error(exc) from exc
        return JoinQueueResponse(queue_id=result.queue_id)

    @app.get("/api/queue/status", response_model=QueueStatusResponse)
    def queue_status(
        player_id: str = Query(min_length=1),
        local_service: QueueService = Depends(get_service),
    ) -> QueueStatusResponse:
        try:
            status = local_service.queue_status(player_id)
        except QueueError as exc:
            raise _http_error(exc) from exc
        return QueueStatusResponse(**status.as_dict())

    @app.delete("/api/queue/{player_id}", response_model=LeaveQueueResponse)
    def leave_queue(
        player_id: str,
        local_service: QueueService = Depends(get_service),
    ) -> LeaveQueueResponse:
        try:
            local_service.leave_queue(player_id)
        except QueueError as exc:
            raise _http_error(exc) from exc
        return LeaveQueueResponse(player_id=player_id, left=True)

    @app.post("/api/parties/{party_id}/queue", response_model=PartyQueueResponse)
    def queue_party(
        party_id: str,
        payload: PartyQueueRequest,
        local_service: QueueService = Depends(get_service),
    ) -> PartyQueueResponse:
        try:
            result = local_service.queue_party(
                party_id=party_id,
                queue_kind=payload.queue_kind,
                instance_kind_hint=payload.instance_kind_hint,
                fill_to_max=payload.fill_to_max,
            )
        except QueueError as exc:
            raise _http_error(exc) from exc
        return PartyQueueResponse(
            queued_count=result.queued_count,
            total=result.total,
            errors=[MemberQueueErrorModel(player_id=error.player_id, error=error.error) for error in result.errors],
        )

    @app.post("/api/parties/{party_id}/cancel-queue", response_model=CancelPartyQueueResponse)
    def cancel_party_queue(
        party_id: str,
        payload: CancelPartyQueueRequest,
        local_service: QueueService = Depends(get_service),
    ) -> CancelPartyQueueResponse:
        try:
            removed = local_service.cancel_party_queue(party_id=party_id, requester_id=payload.requester_id)
        except QueueError as exc:
            raise _http_error(exc) from exc
        return CancelPartyQueueResponse(removed_count=removed)

    @app.post("/api/matchmaking/{queue_kind}/run", response_model=MatchmakingRunResponse)
    def run_matchmaking(
        queue_kind: str,
        local_service: QueueService = Depends(get_service),
    ) -> MatchmakingRunResponse:
        try:
            groups_formed = local_service.run_matchmaking(queue_kind)
        except QueueError as exc:
            raise _http_error(exc) from exc
        return MatchmakingRunResponse(groups_formed=groups_formed)

    @app.get("/api/instances/available/{hero_id}", response_model=AvailableInstancesResponse)
    def available_instances(
        hero_id: str,
        local_service: QueueService = Depends(get_service),
    ) -> AvailableInstancesResponse:
        try:
            level, item_score, available = local_service.available_instances(hero_id)
        except QueueError as exc:
            raise _http_error(exc) from exc
        return AvailableInstancesResponse(
            hero_level=level,
            item_score=item_score,
            available={
                queue_kind: [asdict(definition) for definition in definitions]
                for queue_kind, definitions in available.items()
            },
        )

    @app.get("/api/instances/{instance_id}", response_model=InstanceResponse)
    def get_instance(
        instance_id: str,
        local_service: QueueService = Depends(get_service),
    ) -> InstanceResponse:
        try:
            instance = local_service.get_instance(instance_id)
        except QueueError as exc:
            raise _http_error(exc) from exc
        return InstanceResponse(instance=asdict(instance))

    return app


app = create_app()
