from __future__ import annotations

from collections.abc import Generator
from uuid import UUID

from fastapi import HTTPException, status

from execution_engine.providers.dispatcher import ChannelDispatcher
from execution_engine.services.executor import GoogleAdsClientFactory, default_client_factory


def get_ads_client_factory() -> GoogleAdsClientFactory:
    return default_client_factory


def get_channel_dispatcher() -> Generator[ChannelDispatcher, None, None]:
    dispatcher = ChannelDispatcher()
    try:
        yield dispatcher
    finally:
        dispatcher.close()


def parse_uuid(value: str, *, field: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} must be a UUID") from exc
