from enum import Enum


class ExecutionStatusEnum(str, Enum):
    created = "created"
    blocked = "blocked"
    queued_for_approval = "queued_for_approval"
    approved = "approved"
    rejected = "rejected"
    executing = "executing"
    executed = "executed"
    failed = "failed"


class PayloadKindEnum(str, Enum):
    pause_ad_group = "pause_ad_group"
    reduce_keyword_bid = "reduce_keyword_bid"
    increase_campaign_budget = "increase_campaign_budget"


class ChannelEnum(str, Enum):
    email = "email"
    voice = "voice"
    ads = "ads"


class OutboxStatusEnum(str, Enum):
    queued = "queued"
    scheduled = "scheduled"
    sent = "sent"
    called = "called"
    failed = "failed"
    skipped = "skipped"


class DeliveryStatusEnum(str, Enum):
    sent = "sent"
    delivered = "delivered"
    opened = "opened"
    clicked = "clicked"
    bounced = "bounced"
    complained = "complained"
    unsubscribed = "unsubscribed"


class SkipReasonEnum(str, Enum):
    idempotent_replay = "idempotent_replay"
    already_in_desired_state = "already_in_desired_state"


class AuditEventTypeEnum(str, Enum):
    created = "created"
    blocked = "blocked"
    queued_for_approval = "queued_for_approval"
    approved = "approved"
    rejected = "rejected"
    execution_started = "execution_started"
    execution_succeeded = "execution_succeeded"
    execution_failed = "execution_failed"
    verification_succeeded = "verification_succeeded"
    verification_failed = "verification_failed"
    reverted = "reverted"
    note = "note"


class ActorTypeEnum(str, Enum):
    ai = "ai"
    human = "human"
    system = "system"


class AdsProviderEnum(str, Enum):
    google_ads = "google_ads"


class LeadStatusEnum(str, Enum):
    new = "new"
    contacted = "contacted"
    qualified = "qualified"
    unqualified = "unqualified"
    converted = "converted"
    lost = "lost"
