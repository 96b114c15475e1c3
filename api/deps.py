from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.signatures import EthereumSignatureVerifier, SignatureVerifier
from domain.cache import CachedReadService, ReadThroughCache
from domain.errors import Unauthorized
from domain.services import BetLifecycleService
from infra.db import get_async_db
from infra.redis import RedisCacheStore, cache_store
from infra.settings import settings


# Dependency injection; tests override the store and verifier
def get_cache_store() -> RedisCacheStore:
    return cache_store


def get_signature_verifier() -> SignatureVerifier:
    return EthereumSignatureVerifier()


def get_read_cache(store: RedisCacheStore = Depends(get_cache_store)) -> ReadThroughCache:
    return ReadThroughCache(store)


def get_lifecycle_service(
    db: AsyncSession = Depends(get_async_db),
    cache: ReadThroughCache = Depends(get_read_cache),
) -> BetLifecycleService:
    return BetLifecycleService(db, cache)


def get_read_service(
    db: AsyncSession = Depends(get_async_db),
    cache: ReadThroughCache = Depends(get_read_cache),
) -> CachedReadService:
    return CachedReadService(db, cache)


async def require_admin_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> bool:
    """Administrative operations require the configured API key"""
    if not x_api_key:
        raise Unauthorized("API key required")
    if x_api_key != settings.admin_api_key:
        raise Unauthorized("Invalid API key")
    return True
