"""Soft per-tenant daily LLM budget stored in the ``tenants`` table.

Check and increment are separate statements, so concurrent callers may overshoot
the quota slightly. Resets happen lazily: the first check after
``quota_reset_at`` zeroes the counter and schedules the next reset 24h out.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict

from digestcore.errors import QuotaExceededError
from digestcore.storage.models import Tenant, utcnow

if TYPE_CHECKING:
    from digestcore.storage.db import DatabaseManager

logger = logging.getLogger(__name__)

RESET_INTERVAL = timedelta(hours=24)


class QuotaStore:
    def __init__(
        self,
        db: "DatabaseManager",
        default_quota: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.default_quota = default_quota
        self._clock = clock

    async def _load(self, tenant_id: str) -> Tenant:
        now = self._clock()
        tenant = await self.db.get_tenant(tenant_id)
        if tenant is None:
            tenant = Tenant(
                id=tenant_id,
                llm_daily_quota=self.default_quota,
                llm_used_today=0,
                quota_reset_at=now + RESET_INTERVAL,
            )
            await self.db.upsert_tenant(tenant)
            logger.info("Provisioned tenant %s with daily quota %d", tenant_id, self.default_quota)
        elif now >= tenant.quota_reset_at:
            tenant.llm_used_today = 0
            tenant.quota_reset_at = now + RESET_INTERVAL
            await self.db.upsert_tenant(tenant)
            logger.info("Quota reset for tenant %s", tenant_id)
        return tenant

    async def check(self, tenant_id: str) -> Tenant:
        """Raise QuotaExceededError if the tenant has no calls left today."""
        tenant = await self._load(tenant_id)
        if tenant.llm_used_today >= tenant.llm_daily_quota:
            raise QuotaExceededError(tenant_id, tenant.llm_used_today, tenant.llm_daily_quota)
        return tenant

    async def increment(self, tenant_id: str) -> None:
        await self.db.increment_llm_usage(tenant_id)

    async def set_quota(self, tenant_id: str, quota: int) -> Tenant:
        if quota < 0:
            raise ValueError("quota must be >= 0")
        tenant = await self._load(tenant_id)
        tenant.llm_daily_quota = quota
        await self.db.upsert_tenant(tenant)
        return tenant

    async def usage(self, tenant_id: str) -> Dict[str, Any]:
        tenant = await self._load(tenant_id)
        return {
            "used": tenant.llm_used_today,
            "quota": tenant.llm_daily_quota,
            "remaining": tenant.remaining,
            "reset_at": tenant.quota_reset_at,
        }
