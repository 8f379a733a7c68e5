from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class Recipient(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None
    title: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    job_title: Optional[str] = None
    vertical: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class EmailContent(BaseModel):
    subject: str = Field(min_length=1)
    html: str = Field(min_length=1)
    text: Optional[str] = None
    from_address: Optional[str] = None
    reply_to: Optional[str] = None


class EmailDeployRequest(BaseModel):
    workspace_id: UUID
    tenant_id: Optional[UUID] = None
    campaign_id: str = Field(min_length=1)
    asset_id: str = Field(min_length=1)
    run_id: Optional[UUID] = None
    content: EmailContent
    recipients: Optional[list[Recipient]] = None
    segment: Optional[str] = None


class VoiceCallsRequest(BaseModel):
    workspace_id: UUID
    tenant_id: Optional[UUID] = None
    campaign_id: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    from_phone_number: str = Field(min_length=1)
    run_id: Optional[UUID] = None
    recipients: Optional[list[Recipient]] = None
    segment: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScheduleDays(BaseModel):
    monday: bool = False
    tuesday: bool = False
    wednesday: bool = False
    thursday: bool = False
    friday: bool = False
    saturday: bool = False
    sunday: bool = False


class ScheduleConfig(BaseModel):
    days: ScheduleDays
    timeOfDay: Literal["morning", "midday", "afternoon", "evening"] = "midday"
    timezone: str = "UTC"


class ScheduleEmailsRequest(BaseModel):
    workspace_id: UUID
    tenant_id: Optional[UUID] = None
    campaign_id: str = Field(min_length=1)
    asset_id: str = Field(min_length=1)
    run_id: Optional[UUID] = None
    content: EmailContent
    schedule: ScheduleConfig
    daysToSchedule: int = Field(default=7, ge=1, le=30)
    recipients: Optional[list[Recipient]] = None
    segment: Optional[str] = None


class DispatchDueRequest(BaseModel):
    now: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1, le=1000)


class RecoverRequest(BaseModel):
    stale_after_seconds: Optional[int] = Field(default=None, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=1000)


class ResendWebhookData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email_id: Optional[str] = None
    to: list[str] = Field(default_factory=list)
    click: Optional[dict[str, Any]] = None


class ResendWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    created_at: Optional[str] = None
    data: ResendWebhookData = Field(default_factory=ResendWebhookData)
