"""Execution engine schema"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_execution_engine"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

EXECUTION_STATUSES = (
    "created",
    "blocked",
    "queued_for_approval",
    "approved",
    "rejected",
    "executing",
    "executed",
    "failed",
)
PAYLOAD_KINDS = ("pause_ad_group", "reduce_keyword_bid", "increase_campaign_budget")
OUTBOX_STATUSES = ("queued", "scheduled", "sent", "called", "failed", "skipped")
AUDIT_EVENT_TYPES = (
    "created",
    "blocked",
    "queued_for_approval",
    "approved",
    "rejected",
    "execution_started",
    "execution_succeeded",
    "execution_failed",
    "verification_succeeded",
    "verification_failed",
    "reverted",
    "note",
)
LEAD_STATUSES = ("new", "contacted", "qualified", "unqualified", "converted", "lost")


def upgrade() -> None:
    op.create_table(
        "ad_accounts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("provider", sa.Enum("google_ads", name="ads_provider"), nullable=False),
        sa.Column("customer_id", sa.Text(), nullable=False),
        sa.Column("login_customer_id", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("execution_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_ad_accounts_workspace", "ad_accounts", ["workspace_id"])

    op.create_table(
        "guardrail_policies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column(
            "ad_account_id",
            sa.Uuid(),
            sa.ForeignKey("ad_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("max_single_budget_change_pct", sa.Float(), nullable=False, server_default="0.2"),
        sa.Column("approval_budget_increase_pct", sa.Float(), nullable=False, server_default="0.1"),
        sa.Column("max_net_daily_spend_increase_pct", sa.Float(), nullable=False, server_default="0.15"),
        sa.Column("bid_reduction_pct", sa.Float(), nullable=False, server_default="0.2"),
        sa.Column("lookback_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("workspace_id", "ad_account_id", name="uq_guardrail_policies_scope"),
        sa.CheckConstraint(
            "max_single_budget_change_pct > 0 AND max_single_budget_change_pct <= 0.2",
            name="ck_guardrail_max_single_budget_change_pct",
        ),
        sa.CheckConstraint(
            "approval_budget_increase_pct > 0 AND approval_budget_increase_pct <= 0.1",
            name="ck_guardrail_approval_budget_increase_pct",
        ),
        sa.CheckConstraint(
            "max_net_daily_spend_increase_pct > 0 AND max_net_daily_spend_increase_pct <= 0.15",
            name="ck_guardrail_max_net_daily_spend_increase_pct",
        ),
        sa.CheckConstraint("bid_reduction_pct > 0 AND bid_reduction_pct <= 0.5", name="ck_guardrail_bid_reduction_pct"),
        sa.CheckConstraint("lookback_days >= 1 AND lookback_days <= 90", name="ck_guardrail_lookback_days"),
    )

    op.create_table(
        "execution_units",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column(
            "ad_account_id",
            sa.Uuid(),
            sa.ForeignKey("ad_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("kind", sa.Enum(*PAYLOAD_KINDS, name="payload_kind"), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*EXECUTION_STATUSES, name="execution_status"),
            nullable=False,
            server_default="created",
        ),
        sa.Column("approved_payload", JSON_TYPE, nullable=True),
        sa.Column("risk_flags", JSON_TYPE, nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_execution_units_workspace_status", "execution_units", ["workspace_id", "status"])
    op.create_index("idx_execution_units_ad_account", "execution_units", ["ad_account_id"])

    op.create_table(
        "outbox_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("run_id", sa.Uuid(), nullable=True),
        sa.Column(
            "unit_id",
            sa.Uuid(),
            sa.ForeignKey("execution_units.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("channel", sa.Enum("email", "voice", "ads", name="outbox_channel"), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("recipient_id", sa.Text(), nullable=True),
        sa.Column("recipient_email", sa.Text(), nullable=True),
        sa.Column("recipient_phone", sa.Text(), nullable=True),
        sa.Column("resource_name", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.Text(), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("status", sa.Enum(*OUTBOX_STATUSES, name="outbox_status"), nullable=False),
        sa.Column("provider_message_id", sa.Text(), nullable=True),
        sa.Column("provider_response", JSON_TYPE, nullable=True),
        sa.Column("skipped", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "skip_reason",
            sa.Enum("idempotent_replay", "already_in_desired_state", name="outbox_skip_reason"),
            nullable=True,
        ),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "tenant_id",
            "workspace_id",
            "idempotency_key",
            name="uq_outbox_entries_idempotency_key",
        ),
    )
    op.create_index("idx_outbox_entries_run", "outbox_entries", ["run_id"])
    op.create_index("idx_outbox_entries_status_scheduled", "outbox_entries", ["status", "scheduled_at"])
    op.create_index("idx_outbox_entries_provider_message", "outbox_entries", ["provider_message_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("ad_account_id", sa.Uuid(), nullable=True),
        sa.Column("unit_id", sa.Uuid(), nullable=True),
        sa.Column("event_type", sa.Enum(*AUDIT_EVENT_TYPES, name="audit_event_type"), nullable=False),
        sa.Column("actor_type", sa.Enum("ai", "human", "system", name="actor_type"), nullable=False),
        sa.Column("actor_id", sa.Text(), nullable=True),
        sa.Column("run_id", sa.Uuid(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_audit_events_unit", "audit_events", ["unit_id", "created_at"])
    op.create_index("idx_audit_events_workspace", "audit_events", ["workspace_id", "created_at"])
    op.create_index("idx_audit_events_run", "audit_events", ["run_id"])

    # The ledger is append-only for every client, not just the ORM.
    if op.get_bind().dialect.name == "postgresql":
        op.execute(
            """
            CREATE OR REPLACE FUNCTION audit_events_reject_mutation() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'audit_events is append-only';
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            CREATE TRIGGER audit_events_append_only
            BEFORE UPDATE OR DELETE ON audit_events
            FOR EACH ROW EXECUTE FUNCTION audit_events_reject_mutation();
            """
        )

    op.create_table(
        "leads",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("industry", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("custom_fields", JSON_TYPE, nullable=False),
        sa.Column("status", sa.Enum(*LEAD_STATUSES, name="lead_status"), nullable=False, server_default="new"),
        sa.Column("segment", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_leads_workspace_status", "leads", ["workspace_id", "status"])


def downgrade() -> None:
    op.drop_index("idx_leads_workspace_status", table_name="leads")
    op.drop_table("leads")
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS audit_events_append_only ON audit_events;")
        op.execute("DROP FUNCTION IF EXISTS audit_events_reject_mutation();")
    op.drop_index("idx_audit_events_run", table_name="audit_events")
    op.drop_index("idx_audit_events_workspace", table_name="audit_events")
    op.drop_index("idx_audit_events_unit", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("idx_outbox_entries_provider_message", table_name="outbox_entries")
    op.drop_index("idx_outbox_entries_status_scheduled", table_name="outbox_entries")
    op.drop_index("idx_outbox_entries_run", table_name="outbox_entries")
    op.drop_table("outbox_entries")
    op.drop_index("idx_execution_units_ad_account", table_name="execution_units")
    op.drop_index("idx_execution_units_workspace_status", table_name="execution_units")
    op.drop_table("execution_units")
    op.drop_table("guardrail_policies")
    op.drop_index("idx_ad_accounts_workspace", table_name="ad_accounts")
    op.drop_table("ad_accounts")
    for enum_name in (
        "lead_status",
        "actor_type",
        "audit_event_type",
        "outbox_skip_reason",
        "outbox_status",
        "outbox_channel",
        "execution_status",
        "payload_kind",
        "ads_provider",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
