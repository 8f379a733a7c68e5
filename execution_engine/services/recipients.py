from __future__ import annotations

from typing import Any, Literal, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from execution_engine.config import settings
from execution_engine.db.models import Lead
from execution_engine.db.repositories.leads import LeadsRepository
from execution_engine.schemas.outbox import Recipient

AddressField = Literal["email", "phone"]


def lead_to_recipient(lead: Lead) -> dict[str, Any]:
    return {
        "id": str(lead.id),
        "email": lead.email,
        "phone": lead.phone,
        "first_name": lead.first_name,
        "last_name": lead.last_name,
        "name": lead.name,
        "company": lead.company,
        "title": lead.title,
        "industry": lead.industry,
        "location": lead.location,
        "job_title": lead.job_title,
        "vertical": lead.vertical,
        "city": lead.city,
        "address": lead.address,
        "custom_fields": lead.custom_fields or {},
    }


def _address(recipient: dict[str, Any], field: AddressField) -> str:
    value = (recipient.get(field) or "").strip()
    return value.lower() if field == "email" else value


def resolve_recipients(
    session: Session,
    *,
    workspace_id: UUID,
    address_field: AddressField,
    explicit: Optional[Sequence[Recipient]] = None,
    segment: Optional[str] = None,
) -> list[dict[str, Any]]:
    """
    Explicit recipients win. Without them, fall back to CRM leads in the
    workspace with an active lifecycle status, narrowed (never widened) by segment.

    Recipients without the channel's address are dropped and duplicates of the
    same address are collapsed.
    """
    if explicit:
        candidates = [recipient.model_dump() for recipient in explicit]
    else:
        leads = LeadsRepository(session).list_active_recipients(
            workspace_id=workspace_id,
            statuses=settings.CRM_ACTIVE_LEAD_STATUSES,
            limit=settings.CRM_RECIPIENT_FALLBACK_LIMIT,
            segment=segment,
            require_email=address_field == "email",
            require_phone=address_field == "phone",
        )
        candidates = [lead_to_recipient(lead) for lead in leads]

    resolved: list[dict[str, Any]] = []
    seen: set[str] = set()
    for recipient in candidates:
        address = _address(recipient, address_field)
        if not address or address in seen:
            continue
        seen.add(address)
        recipient[address_field] = address
        resolved.append(recipient)
    return resolved


def recipient_identity(recipient: dict[str, Any], address_field: AddressField) -> str:
    return str(recipient.get("id") or _address(recipient, address_field))
