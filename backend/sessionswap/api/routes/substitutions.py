from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status

from sessionswap.api.deps import get_now, get_requester_id, get_store, get_substitution_service
from sessionswap.core.config import Settings, get_settings
from sessionswap.core.exceptions import ForbiddenError
from sessionswap.models.substitution_request import RequestKind, RequestStatus, SubstitutionRequest
from sessionswap.schemas.substitution import (
    AlternativesOut,
    SubstitutionRequestApprove,
    SubstitutionRequestCreate,
    SubstitutionRequestOut,
    SubstitutionRequestPage,
    SubstitutionRequestReject,
)
from sessionswap.services.alternatives import list_alternatives, origin_from_ids
from sessionswap.services.store import SqlAlchemyStore
from sessionswap.services.substitution import SubstitutionService

router = APIRouter()


def _ensure_participant(request: SubstitutionRequest, user_id: str) -> None:
    if user_id not in {request.requester_id, request.tutor_id}:
        raise ForbiddenError("You are not part of this request", details={"request_id": request.id})


def _ensure_tutor(request: SubstitutionRequest, user_id: str) -> None:
    if user_id != request.tutor_id:
        raise ForbiddenError("Only the tutor can resolve this request", details={"request_id": request.id})


@router.get("/substitutions/alternatives", response_model=AlternativesOut)
def get_alternatives(
    meeting_id: str | None = Query(default=None),
    template_id: str | None = Query(default=None),
    requester_id: str = Depends(get_requester_id),
    store: SqlAlchemyStore = Depends(get_store),
    now: datetime = Depends(get_now),
    settings: Settings = Depends(get_settings),
) -> AlternativesOut:
    origin = origin_from_ids(meeting_id, template_id)
    return list_alternatives(store, origin, requester_id, now=now, settings=settings)


@router.get("/substitution-requests", response_model=SubstitutionRequestPage)
def list_substitution_requests(
    role: Literal["requester", "tutor"] = Query(default="requester"),
    request_status: RequestStatus | None = Query(default=None, alias="status"),
    kind: RequestKind | None = Query(default=None),
    template_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user_id: str = Depends(get_requester_id),
    service: SubstitutionService = Depends(get_substitution_service),
) -> SubstitutionRequestPage:
    items, total = service.list_requests(
        page=page,
        limit=limit,
        requester_id=current_user_id if role == "requester" else None,
        tutor_id=current_user_id if role == "tutor" else None,
        status=request_status,
        kind=kind,
        origin_template_id=template_id,
    )
    return SubstitutionRequestPage(
        items=[SubstitutionRequestOut.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.post(
    "/substitution-requests",
    response_model=SubstitutionRequestOut,
    status_code=status.HTTP_201_CREATED,
)
def create_substitution_request(
    payload: SubstitutionRequestCreate,
    requester_id: str = Depends(get_requester_id),
    service: SubstitutionService = Depends(get_substitution_service),
) -> SubstitutionRequestOut:
    request = service.create_request(
        requester_id=requester_id,
        kind=payload.kind,
        origin=origin_from_ids(payload.meeting_id, payload.template_id),
        reason=payload.reason,
        preferred_start=payload.preferred_start,
        chosen_alternative_id=payload.chosen_alternative_id,
    )
    return SubstitutionRequestOut.model_validate(request)


@router.get("/substitution-requests/{request_id}", response_model=SubstitutionRequestOut)
def get_substitution_request(
    request_id: str,
    current_user_id: str = Depends(get_requester_id),
    service: SubstitutionService = Depends(get_substitution_service),
) -> SubstitutionRequestOut:
    request = service.get_request(request_id)
    _ensure_participant(request, current_user_id)
    return SubstitutionRequestOut.model_validate(request)


@router.put("/substitution-requests/{request_id}/approve", response_model=SubstitutionRequestOut)
def approve_substitution_request(
    request_id: str,
    payload: SubstitutionRequestApprove,
    current_user_id: str = Depends(get_requester_id),
    service: SubstitutionService = Depends(get_substitution_service),
) -> SubstitutionRequestOut:
    _ensure_tutor(service.get_request(request_id), current_user_id)
    request = service.approve_request(
        request_id,
        actor_id=current_user_id,
        response_message=payload.response_message,
        new_start=payload.new_start,
        new_end=payload.new_end,
        chosen_alternative_id=payload.chosen_alternative_id,
    )
    return SubstitutionRequestOut.model_validate(request)


@router.put("/substitution-requests/{request_id}/reject", response_model=SubstitutionRequestOut)
def reject_substitution_request(
    request_id: str,
    payload: SubstitutionRequestReject,
    current_user_id: str = Depends(get_requester_id),
    service: SubstitutionService = Depends(get_substitution_service),
) -> SubstitutionRequestOut:
    _ensure_tutor(service.get_request(request_id), current_user_id)
    request = service.reject_request(
        request_id,
        response_message=payload.response_message,
        actor_id=current_user_id,
    )
    return SubstitutionRequestOut.model_validate(request)


@router.delete("/substitution-requests/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_substitution_request(
    request_id: str,
    current_user_id: str = Depends(get_requester_id),
    service: SubstitutionService = Depends(get_substitution_service),
) -> Response:
    _ensure_participant(service.get_request(request_id), current_user_id)
    service.delete_request(request_id, actor_id=current_user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
