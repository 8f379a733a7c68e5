from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy import select, update

from execution_engine.db.enums import AdsProviderEnum
from execution_engine.db.models import AdAccount, utcnow
from execution_engine.db.repositories.base import Repository


class AdAccountsRepository(Repository):
    def get(self, ad_account_id: UUID) -> Optional[AdAccount]:
        stmt = select(AdAccount).where(AdAccount.id == ad_account_id)
        return self.session.scalars(stmt).first()

    def get_in_workspace(self, *, workspace_id: UUID, ad_account_id: UUID) -> Optional[AdAccount]:
        stmt = select(AdAccount).where(
            AdAccount.id == ad_account_id,
            AdAccount.workspace_id == workspace_id,
        )
        return self.session.scalars(stmt).first()

    def create(
        self,
        *,
        workspace_id: UUID,
        customer_id: str,
        login_customer_id: Optional[str] = None,
        name: Optional[str] = None,
        is_active: bool = True,
        execution_enabled: bool = True,
    ) -> AdAccount:
        account = AdAccount(
            workspace_id=workspace_id,
            provider=AdsProviderEnum.google_ads,
            customer_id=customer_id.replace("-", ""),
            login_customer_id=login_customer_id.replace("-", "") if login_customer_id else None,
            name=name,
            is_active=is_active,
            execution_enabled=execution_enabled,
        )
        return self.save(account)

    def set_execution_enabled(self, ad_account_id: UUID, *, enabled: bool) -> Optional[AdAccount]:
        stmt = (
            update(AdAccount)
            .where(AdAccount.id == ad_account_id)
            .values(execution_enabled=enabled, updated_at=utcnow())
            .returning(AdAccount)
            .execution_options(synchronize_session=False)
        )
        account = self.session.execute(stmt).scalar_one_or_none()
        if account:
            self.session.commit()
            self.session.refresh(account)
        return account
