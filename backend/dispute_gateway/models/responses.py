"""API response models."""

from typing import Optional

from pydantic import BaseModel

from shared.models import Dispute, TimelineEvent


class ListResponse(BaseModel):
    items: list
    total: int
    limit: int
    offset: int


class TimelineResponse(BaseModel):
    dispute_id: str
    events: list[TimelineEvent]
    total: int


class DisputeDetailResponse(BaseModel):
    dispute: Dispute
    timeline: list[TimelineEvent]


class ReconcileResponse(BaseModel):
    status: str
    key: Optional[str] = None
    dispute_id: Optional[str] = None
    detail: str = ""
    conflict_id: Optional[str] = None
