from execution_engine.db.repositories.ad_accounts import AdAccountsRepository
from execution_engine.db.repositories.audit_events import AuditEventsRepository
from execution_engine.db.repositories.execution_units import ClaimResult, ExecutionUnitsRepository
from execution_engine.db.repositories.guardrails import DEFAULT_GUARDRAIL_VALUES, GuardrailPoliciesRepository
from execution_engine.db.repositories.leads import LeadsRepository
from execution_engine.db.repositories.outbox import OutboxRepository

__all__ = [
    "AdAccountsRepository",
    "AuditEventsRepository",
    "ClaimResult",
    "DEFAULT_GUARDRAIL_VALUES",
    "ExecutionUnitsRepository",
    "GuardrailPoliciesRepository",
    "LeadsRepository",
    "OutboxRepository",
]
