"""Pydantic models for wearable connections and the job-triggering endpoints."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum

from pydantic import Field, model_validator

from pulsesync.models.base import PulseSyncBase


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


# ---------- Connections ----------

class ConnectionRead(PulseSyncBase):
    connection_id: uuid.UUID | None = None
    user_id: str
    provider: str
    provider_user_id: str | None = None
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_synced_at: datetime | None = None
    connected_at: datetime | None = None
    disconnected_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE


class ConnectionList(PulseSyncBase):
    connections: list[ConnectionRead]


# ---------- Job requests ----------

class BackfillRequest(PulseSyncBase):
    days_back: int | None = Field(default=None, ge=1, le=365, alias="daysBack")


class SyncRequest(PulseSyncBase):
    start_date: date | None = Field(default=None, alias="startDate")
    end_date: date | None = Field(default=None, alias="endDate")

    @model_validator(mode="after")
    def _check_order(self) -> "SyncRequest":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self


class JobAccepted(PulseSyncBase):
    """202 body: acknowledgment of enqueue, not of execution."""

    message: str
    provider: str
    job_id: uuid.UUID | None = Field(default=None, alias="jobId")
    days_back: int | None = Field(default=None, alias="daysBack")
    start_date: date | None = Field(default=None, alias="startDate")
    end_date: date | None = Field(default=None, alias="endDate")
