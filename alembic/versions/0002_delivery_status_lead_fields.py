"""Outbox delivery callbacks and extra lead personalization columns"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0002_delivery_status_lead_fields"
down_revision = "0001_execution_engine"
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

DELIVERY_STATUSES = ("sent", "delivered", "opened", "clicked", "bounced", "complained", "unsubscribed")
LEAD_COLUMNS = ("job_title", "vertical", "city", "address")


def upgrade() -> None:
    delivery_status = sa.Enum(*DELIVERY_STATUSES, name="outbox_delivery_status")
    delivery_status.create(op.get_bind(), checkfirst=True)
    op.add_column("outbox_entries", sa.Column("delivery_status", delivery_status, nullable=True))
    op.add_column("outbox_entries", sa.Column("delivery_event", JSON_TYPE, nullable=True))
    op.add_column("outbox_entries", sa.Column("delivery_updated_at", sa.DateTime(timezone=True), nullable=True))
    for column in LEAD_COLUMNS:
        op.add_column("leads", sa.Column(column, sa.Text(), nullable=True))


def downgrade() -> None:
    for column in reversed(LEAD_COLUMNS):
        op.drop_column("leads", column)
    op.drop_column("outbox_entries", "delivery_updated_at")
    op.drop_column("outbox_entries", "delivery_event")
    op.drop_column("outbox_entries", "delivery_status")
    sa.Enum(name="outbox_delivery_status").drop(op.get_bind(), checkfirst=True)
