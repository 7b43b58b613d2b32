# Copyright (c) 2026 John Earle
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Per-tenant daily LLM call quota.

One Redis counter per tenant per UTC day:

    llm_usage:{tenant_id}:{YYYY-MM-DD}   INCR on every call, expires after 2 days

The increment is the check: the call is allowed while the post-increment
value is within the limit. If Redis is unreachable the call is allowed
(fail open) and the decision carries the error so the pipeline can flag it.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "llm_usage"
KEY_TTL_SECONDS = 2 * 24 * 3600
WARNING_RATIO = 0.8


@dataclass
class QuotaDecision:
    allowed: bool
    used: int = 0
    limit: int = 0
    warning: Optional[str] = None
    error: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LLMQuota:
    """Atomic increment-and-check against a date-bucketed Redis counter."""

    def __init__(
        self,
        client: Optional["redis.Redis"] = None,
        redis_url: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._client = client
        self._redis_url = redis_url or os.environ.get("REDIS_URL", "redis://localhost:6379/0")
        self._clock = clock

    @property
    def client(self) -> "redis.Redis":
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def key(self, tenant_id: str) -> str:
        return f"{KEY_PREFIX}:{tenant_id}:{self._clock().strftime('%Y-%m-%d')}"

    def consume(self, tenant_id: str, limit: int) -> QuotaDecision:
        """Count one LLM call for the tenant and decide whether it may run."""
        key = self.key(tenant_id)
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, KEY_TTL_SECONDS)
            used = int(pipe.execute()[0])
        except redis.RedisError as exc:
            logger.warning("LLM quota check failed for tenant %s, allowing call: %s", tenant_id, exc)
            return QuotaDecision(allowed=True, limit=limit, error=str(exc))

        if used > limit:
            logger.info("LLM quota exhausted for tenant %s (%d/%d)", tenant_id, used, limit)
            return QuotaDecision(allowed=False, used=used, limit=limit)

        warning = None
        if limit > 0 and used >= limit * WARNING_RATIO:
            warning = f"LLM usage at {round(used / limit * 100)}% of daily limit ({used}/{limit})"
            logger.warning("Tenant %s: %s", tenant_id, warning)

        return QuotaDecision(allowed=True, used=used, limit=limit, warning=warning)

    def usage(self, tenant_id: str) -> int:
        """Calls counted today, 0 if unknown."""
        try:
            value = self.client.get(self.key(tenant_id))
        except redis.RedisError as exc:
            logger.warning("LLM usage lookup failed for tenant %s: %s", tenant_id, exc)
            return 0
        return int(value or 0)
