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
BEC Analyzer — Data Models

Self-contained dataclasses for the BEC layer: the pattern library entries,
what the content scan matched, impersonation findings and the combined
per-email result. These are internal to the BEC module; the pipeline only
ever sees the ``bec_*`` signals built from them.
"""
import re
from dataclasses import dataclass, field
from typing import Optional


# ---------------------------------------------------------------------------
# Risk levels
# ---------------------------------------------------------------------------

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
RISK_CRITICAL = "critical"

#: Weight of each risk level when folded into a 0..1 score.
RISK_WEIGHTS: dict[str, float] = {
    RISK_CRITICAL: 1.0,
    RISK_HIGH: 0.7,
    RISK_MEDIUM: 0.4,
    RISK_LOW: 0.2,
}


# ---------------------------------------------------------------------------
# Pattern library
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BECPattern:
    """One entry of the BEC pattern library.

    Every keyword that appears adds ``keyword_weight``; the regex adds
    ``regex_weight``. Subject and body are scanned separately, so a phrase
    in both counts twice. The pattern score is capped at 1.0.
    """
    id: str
    category: str
    severity: str
    description: str
    keywords: tuple[str, ...]
    keyword_weight: float
    regex: Optional[re.Pattern] = None
    regex_weight: float = 0.0


@dataclass
class PatternMatch:
    """A BEC pattern that fired, with the evidence behind it."""
    pattern: BECPattern
    evidence: list[str] = field(default_factory=list)   # '"wire transfer" in body'
    score: float = 0.0


@dataclass
class AmountRisk:
    has_high_risk_amount: bool = False
    max_amount: float = 0.0
    risk_level: str = RISK_LOW


@dataclass
class FinancialRisk:
    """Money mentioned alongside a wire / gift card / invoice pattern."""
    has_financial_request: bool = False
    amounts: list[tuple[float, str]] = field(default_factory=list)
    max_amount: float = 0.0
    risk_level: str = RISK_LOW
    financial_entities: list[str] = field(default_factory=list)


@dataclass
class CompoundAttack:
    is_compound_attack: bool = False
    severity: str = RISK_LOW
    explanation: str = ""


# ---------------------------------------------------------------------------
# Impersonation
# ---------------------------------------------------------------------------

@dataclass
class VIPEntry:
    """A person in the tenant whose name is worth impersonating."""

    display_name: str
    email: str = ""
    title: str = ""
    role: str = "executive"     # executive | finance | hr | it | legal | board | assistant
    aliases: list[str] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        """Lower-cased display name plus aliases."""
        return [n.strip().lower() for n in [self.display_name, *self.aliases] if n and n.strip()]

    @classmethod
    def from_dict(cls, data: dict) -> "VIPEntry":
        return cls(
            display_name=data.get("display_name") or data.get("name", ""),
            email=(data.get("email") or "").lower(),
            title=data.get("title", ""),
            role=data.get("role", "executive"),
            aliases=list(data.get("aliases", []) or []),
        )


@dataclass
class ImpersonationSignal:
    type: str       # display_name_spoof | title_spoof | free_email_executive | ...
    severity: str   # low | medium | high | critical
    detail: str
    metadata: dict = field(default_factory=dict)


@dataclass
class ImpersonationResult:
    is_impersonation: bool = False
    impersonation_type: Optional[str] = None
    confidence: float = 0.0
    matched_vip: Optional[VIPEntry] = None
    signals: list[ImpersonationSignal] = field(default_factory=list)
    explanation: str = "No impersonation indicators detected"

    @property
    def risk_score(self) -> float:
        """Severity-weighted 0..1 score of the impersonation signals."""
        if not self.is_impersonation or not self.signals:
            return 0.0
        total = sum(RISK_WEIGHTS.get(s.severity, 0.0) for s in self.signals)
        return min(total / 2, 1.0)


# ---------------------------------------------------------------------------
# Combined result
# ---------------------------------------------------------------------------

@dataclass
class BECResult:
    """Everything the BEC layer concluded about one email."""
    is_bec: bool = False
    confidence: float = 0.0
    risk_level: str = RISK_LOW
    patterns: list[PatternMatch] = field(default_factory=list)
    impersonation: ImpersonationResult = field(default_factory=ImpersonationResult)
    financial_risk: FinancialRisk = field(default_factory=FinancialRisk)
    compound: CompoundAttack = field(default_factory=CompoundAttack)
    summary: str = "No BEC indicators detected"
