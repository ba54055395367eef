"""Pydantic models for provider webhook payloads.

Only the fields the translator relies on are declared.  Everything else a
provider sends is tolerated (``extra="ignore"``) and never read; the full
provider data arrives later through the adapter and is kept in the raw
ingest audit table.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------- Garmin ----------

class GarminNotification(_Lenient):
    user_id: str | None = Field(default=None, alias="userId")
    summary_id: str | None = Field(default=None, alias="summaryId")


class GarminWebhookPayload(_Lenient):
    """Garmin push: one list per data type, each entry naming a Garmin user."""

    activities: list[GarminNotification] = Field(default_factory=list)
    activity_details: list[GarminNotification] = Field(default_factory=list, alias="activityDetails")
    dailies: list[GarminNotification] = Field(default_factory=list)
    epochs: list[GarminNotification] = Field(default_factory=list)
    sleeps: list[GarminNotification] = Field(default_factory=list)
    body_comps: list[GarminNotification] = Field(default_factory=list, alias="bodyComps")
    stress_details: list[GarminNotification] = Field(default_factory=list, alias="stressDetails")
    user_metrics: list[GarminNotification] = Field(default_factory=list, alias="userMetrics")
    move_iq: list[GarminNotification] = Field(default_factory=list, alias="moveIQ")
    pulse_ox: list[GarminNotification] = Field(default_factory=list, alias="pulseOx")
    respiration: list[GarminNotification] = Field(default_factory=list)
    hrv: list[GarminNotification] = Field(default_factory=list)

    def sections(self) -> list[list[GarminNotification]]:
        return [getattr(self, name) for name in type(self).model_fields]

    def user_ids(self) -> set[str]:
        """Distinct Garmin user ids across every data-type section."""
        return {n.user_id for section in self.sections() for n in section if n.user_id}


# ---------- Fitbit ----------

class FitbitNotification(_Lenient):
    collection_type: str = Field(alias="collectionType")
    date: str | None = None
    owner_id: str = Field(alias="ownerId")
    owner_type: str | None = Field(default=None, alias="ownerType")
    subscription_id: str | None = Field(default=None, alias="subscriptionId")


class GarminWebhookAck(BaseModel):
    received: bool = True
    queued: int = 0
