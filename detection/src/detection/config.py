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
Detection configuration.

A DetectionConfig is built in three layers, later layers winning:

1. the defaults below
2. the ``detection:`` section of config.yaml, then the tenant's own
   ``detection:`` block (``tenants: [{id: ..., detection: {...}}]``)
3. per-call overrides passed to ``DetectionPipeline.analyze``

Example config.yaml fragment:

    detection:
      thresholds: {suspicious: 50}
      layer_timeouts_ms: {llm: 20000}
    tenants:
      - id: "tenant-a"
        detection:
          skip_llm: true
"""
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Optional

from mailguard_shared.config import get_detection_defaults, get_tenant

logger = logging.getLogger(__name__)

DEFAULT_LAYER_TIMEOUTS_MS = {
    "deterministic": 5000,
    "reputation": 5000,
    "ml": 10000,
    "bec": 5000,
    "llm": 30000,
    "sandbox": 180000,
    "behavioral": 2000,
}

# Daily LLM call budgets by tenant plan, used when no explicit limit is set
PLAN_LLM_LIMITS = {
    "starter": 100,
    "pro": 500,
    "enterprise": 2000,
}


# ---------------------------------------------------------------------------
# Value checks
# ---------------------------------------------------------------------------

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_timeout(name: str, value) -> None:
    if not _is_number(value) or value <= 0:
        raise ValueError(f"{name} must be a positive number of milliseconds, got {value!r}")


def _check_range(name: str, value) -> tuple:
    """A (low, high) pair of numbers with low <= high."""
    try:
        low, high = value
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a [low, high] pair, got {value!r}") from None
    if not (_is_number(low) and _is_number(high)) or low > high:
        raise ValueError(f"{name} must be a [low, high] pair with low <= high, got {value!r}")
    return (low, high)


@dataclass(frozen=True)
class Thresholds:
    """Score cut-offs for each verdict. Must be non-decreasing."""
    pass_: int = 35
    suspicious: int = 55
    quarantine: int = 73
    block: int = 85

    def __post_init__(self):
        values = [self.pass_, self.suspicious, self.quarantine, self.block]
        if any(v < 0 or v > 100 for v in values):
            raise ValueError(f"Thresholds must lie in 0..100, got {values}")
        if values != sorted(values):
            raise ValueError(f"Thresholds must be non-decreasing, got {values}")

    @classmethod
    def from_dict(cls, data: dict) -> "Thresholds":
        data = dict(data)
        if "pass" in data:
            data["pass_"] = data.pop("pass")
        return cls(**data)


@dataclass(frozen=True)
class DetectionConfig:
    """Knobs for one pipeline run."""
    thresholds: Thresholds = field(default_factory=Thresholds)

    # Layer gating
    skip_llm: bool = False
    skip_sandbox: bool = False
    invoke_llm_confidence_range: tuple = (0.4, 0.7)
    llm_deterministic_range: tuple = (30, 70)

    # LLM budget / model
    llm_model: str = "claude-3-5-haiku-20241022"
    llm_max_tokens: int = 1024
    llm_daily_limit_per_tenant: Optional[int] = None
    plan: str = "starter"

    # Timeouts
    layer_timeouts_ms: dict = field(default_factory=lambda: dict(DEFAULT_LAYER_TIMEOUTS_MS))
    url_analysis_timeout_ms: int = 5000
    sandbox_timeout_ms: int = 180000

    # Score engine toggles
    enable_first_contact_amplification: bool = True
    enable_synergy_bonus: bool = True

    @property
    def llm_daily_limit(self) -> int:
        if self.llm_daily_limit_per_tenant is not None:
            return self.llm_daily_limit_per_tenant
        return PLAN_LLM_LIMITS.get(self.plan, PLAN_LLM_LIMITS["starter"])

    def layer_timeout_seconds(self, layer: str) -> float:
        default = DEFAULT_LAYER_TIMEOUTS_MS.get(layer, 5000)
        value = self.layer_timeouts_ms.get(layer, default)
        if not _is_number(value) or value <= 0:
            logger.warning("Invalid timeout %r for layer '%s', using %dms", value, layer, default)
            value = default
        return value / 1000.0

    def sandbox_timeout_seconds(self) -> float:
        """The sandbox layer gets the smaller of its layer timeout and ``sandbox_timeout_ms``."""
        timeout = self.layer_timeout_seconds("sandbox")
        if _is_number(self.sandbox_timeout_ms) and self.sandbox_timeout_ms > 0:
            timeout = min(timeout, self.sandbox_timeout_ms / 1000.0)
        return timeout

    def merged(self, overrides: Optional[dict]) -> "DetectionConfig":
        """Return a copy with ``overrides`` applied. Unknown keys raise ValueError."""
        if not overrides:
            return self

        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown detection config key(s): {', '.join(sorted(unknown))}")

        changes = dict(overrides)
        if "thresholds" in changes:
            current = {
                "pass": self.thresholds.pass_,
                "suspicious": self.thresholds.suspicious,
                "quarantine": self.thresholds.quarantine,
                "block": self.thresholds.block,
            }
            new = changes["thresholds"]
            if isinstance(new, Thresholds):
                changes["thresholds"] = new
            else:
                current.update(new or {})
                changes["thresholds"] = Thresholds.from_dict(current)
        if "layer_timeouts_ms" in changes:
            new = changes["layer_timeouts_ms"] or {}
            if not isinstance(new, dict):
                raise ValueError(f"layer_timeouts_ms must be a mapping, got {new!r}")
            for layer, value in new.items():
                _check_timeout(f"layer_timeouts_ms.{layer}", value)
            timeouts = dict(self.layer_timeouts_ms)
            timeouts.update(new)
            changes["layer_timeouts_ms"] = timeouts
        for key in ("url_analysis_timeout_ms", "sandbox_timeout_ms"):
            if key in changes:
                _check_timeout(key, changes[key])
        for key in ("invoke_llm_confidence_range", "llm_deterministic_range"):
            if key in changes:
                changes[key] = _check_range(key, changes[key])
        if "llm_daily_limit_per_tenant" in changes:
            limit = changes["llm_daily_limit_per_tenant"]
            if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit < 0):
                raise ValueError(f"llm_daily_limit_per_tenant must be a non-negative integer, got {limit!r}")

        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DetectionConfig":
        return cls().merged(data or {})


def load_detection_config(tenant_id: Optional[str] = None) -> DetectionConfig:
    """Build the effective config for a tenant from config.yaml."""
    config = DetectionConfig.from_dict(get_detection_defaults())

    if tenant_id:
        tenant = get_tenant(tenant_id)
        if tenant:
            overrides = dict(tenant.get("detection", {}) or {})
            if "plan" in tenant and "plan" not in overrides:
                overrides["plan"] = tenant["plan"]
            config = config.merged(overrides)

    return config
