"""
Response schemas for the call and queue API.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class InitiateCallResponse(BaseModel):
    success: bool
    call_id: str | None = None
    vendor_call_id: str | None = None
    message: str | None = None
    error: str | None = None
    skipped: bool = False
    reason: str | None = None


class TriggerResponse(BaseModel):
    success: bool = True
    job_id: str
    message: str = "Daily calls scheduler triggered successfully"


class RecurringJobResponse(BaseModel):
    key: str
    kind: str
    every_seconds: int
    next_run_at: datetime


class QueueStatusResponse(BaseModel):
    success: bool = True
    name: str
    health: str
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    recurring: list[RecurringJobResponse] = Field(default_factory=list)
