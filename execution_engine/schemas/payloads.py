from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from execution_engine.errors import ExecutionValidationError

Micros = Annotated[int, Field(gt=0, strict=True)]


def _coerce_numeric_id(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


NumericId = Annotated[str, Field(min_length=1, max_length=32, pattern=r"^\d+$")]


class _ApprovedPayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class PauseAdGroupPayload(_ApprovedPayloadBase):
    kind: Literal["pause_ad_group"]
    adGroupId: NumericId

    coerce_ids = field_validator("adGroupId", mode="before")(_coerce_numeric_id)


class ReduceKeywordBidPayload(_ApprovedPayloadBase):
    kind: Literal["reduce_keyword_bid"]
    adGroupId: NumericId
    criterionId: NumericId
    afterCpcBidMicros: Micros
    beforeCpcBidMicros: Optional[Micros] = None

    coerce_ids = field_validator("adGroupId", "criterionId", mode="before")(_coerce_numeric_id)


class IncreaseCampaignBudgetPayload(_ApprovedPayloadBase):
    kind: Literal["increase_campaign_budget"]
    campaignBudgetId: NumericId
    afterAmountMicros: Micros
    beforeAmountMicros: Optional[Micros] = None

    coerce_ids = field_validator("campaignBudgetId", mode="before")(_coerce_numeric_id)


ApprovedPayload = Annotated[
    Union[PauseAdGroupPayload, ReduceKeywordBidPayload, IncreaseCampaignBudgetPayload],
    Field(discriminator="kind"),
]

_approved_payload_adapter: TypeAdapter[ApprovedPayload] = TypeAdapter(ApprovedPayload)


def parse_approved_payload(raw: Any) -> ApprovedPayload:
    """Strictly parse an approved payload; any shape problem is an ExecutionValidationError."""
    if not isinstance(raw, dict):
        raise ExecutionValidationError("approvedPayload must be a JSON object")
    try:
        return _approved_payload_adapter.validate_python(raw)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'approvedPayload'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ExecutionValidationError(f"Invalid approvedPayload: {details}") from exc


def dump_approved_payload(payload: ApprovedPayload) -> dict[str, Any]:
    return payload.model_dump(mode="json", exclude_none=True)
