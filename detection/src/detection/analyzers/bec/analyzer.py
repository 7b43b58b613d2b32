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
Analyzer: Business Email Compromise (BEC) Detection

Content patterns + impersonation + contact history for detecting Business
Email Compromise attempts.

Pipeline (read-only):
  1. Content scan: pattern library, amounts, financial entities
  2. Impersonation: VIP display names, executive titles, free mail,
     Reply-To divergence, cousins of the organisation's domain, homoglyphs
  3. Compound attack: financial pattern combined with pressure
  4. Risk scoring: 0..1 confidence, BEC yes/no
  5. Contact history: first contact with each recipient

Signals produced:
    bec_<pattern>            one per matched pattern (bec_wire_transfer_request, ...)
    bec_<impersonation>      bec_display_name_spoof, bec_title_spoof, ...
    bec_financial_amount     money mentioned next to a financial pattern
    bec_compound_attack      risky combination of patterns
    bec_impersonation        the sender impersonates an executive / VIP (40)
    bec_financial_risk       financial request, scored by amount
    bec_detected             overall BEC verdict (35)
    first_contact            first email from this sender to a recipient
    first_contact_vip_impersonation
"""
import logging
from typing import Optional

from detection.analyzers._base import BaseAnalyzer
from detection.analyzers.bec.impersonation import detect_impersonation, executive_title
from detection.analyzers.bec.models import (
    RISK_CRITICAL,
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    RISK_WEIGHTS,
    BECResult,
    FinancialRisk,
    VIPEntry,
)
from detection.analyzers.bec.signals import (
    CATEGORY_NAMES,
    assess_amount_risk,
    detect_compound_attack,
    extract_amounts,
    scan_financial_entities,
    scan_patterns,
)
from detection.history import ContactHistory
from detection.models import (
    LAYER_BEC,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    EmailEvent,
    LayerResult,
    Signal,
)
from detection.text import domain_of

logger = logging.getLogger(__name__)

#: Pattern categories that make an amount a financial request
_MONEY_CATEGORIES = frozenset({"wire_fraud", "gift_card", "invoice_fraud"})

#: BEC risk level -> (signal severity, signal score)
_SEVERITY_MAP = {
    RISK_CRITICAL: (SEVERITY_CRITICAL, 35),
    RISK_HIGH: (SEVERITY_CRITICAL, 25),
    RISK_MEDIUM: (SEVERITY_WARNING, 15),
    RISK_LOW: (SEVERITY_INFO, 5),
}

#: Amount risk level -> (severity, score) of bec_financial_risk
_FINANCIAL_RISK_MAP = {
    RISK_CRITICAL: (SEVERITY_CRITICAL, 30),
    RISK_HIGH: (SEVERITY_CRITICAL, 20),
}

IMPERSONATION_SCORE = 40
BEC_DETECTED_SCORE = 35
FIRST_CONTACT_SCORE = 15
VIP_FIRST_CONTACT_SCORE = 40
BEC_MIN_LAYER_SCORE = 50


def _format_amount(amount: float) -> str:
    return f"${amount:,.0f}"


class BECAnalyzer(BaseAnalyzer):
    """Pattern, impersonation and first-contact BEC detection."""

    layer = LAYER_BEC
    description = "Business Email Compromise patterns, executive impersonation and first contact"

    def __init__(
        self,
        history: Optional[ContactHistory] = None,
        vips: Optional[dict[str, list[VIPEntry]]] = None,
    ):
        self.history = history
        self.vips = vips or {}

    def analyze(self, email: EmailEvent, prior_signals: Optional[list[Signal]] = None) -> LayerResult:
        result = self.detect(email)
        signals = self._to_signals(result)
        signals.extend(self._first_contact_signals(email, result))

        score = min(100, round(result.confidence * 100))
        if result.is_bec:
            score = max(score, BEC_MIN_LAYER_SCORE)

        return self.result(
            signals,
            confidence=result.confidence,
            score=score,
            is_bec=result.is_bec,
            risk_level=result.risk_level,
            pattern_count=len(result.patterns),
            has_impersonation=result.impersonation.is_impersonation,
        )

    # ----- Detection -----

    def detect(self, email: EmailEvent) -> BECResult:
        subject = email.subject or ""
        body = email.plain_body
        patterns = scan_patterns(subject, body)

        sender_domain = email.sender_domain
        org_domains = sorted({domain_of(r) for r in email.recipients} - {"", sender_domain})
        impersonation = detect_impersonation(
            email.sender,
            email.sender_name,
            reply_to=email.reply_to,
            vips=self._vips_for(email.tenant_id),
            organization_domains=org_domains,
        )

        text = f"{subject} {body}"
        amounts = extract_amounts(text)
        amount_risk = assess_amount_risk(amounts)
        financial = FinancialRisk(
            has_financial_request=bool(amounts) and any(
                p.pattern.category in _MONEY_CATEGORIES for p in patterns
            ),
            amounts=amounts,
            max_amount=amount_risk.max_amount,
            risk_level=amount_risk.risk_level,
            financial_entities=scan_financial_entities(body),
        )
        compound = detect_compound_attack(patterns)

        # Every severity that fed into the result, for the critical override
        severities = [p.pattern.severity for p in patterns]
        if impersonation.is_impersonation:
            severities += [s.severity for s in impersonation.signals]
        if financial.has_financial_request and financial.max_amount > 0:
            severities.append(financial.risk_level)
        if compound.is_compound_attack:
            severities.append(compound.severity)
        has_critical = RISK_CRITICAL in severities

        score = min(sum(p.score * 0.15 for p in patterns), 0.4)
        if impersonation.is_impersonation:
            score += impersonation.risk_score * 0.4
        if financial.has_financial_request:
            score += 0.2 * RISK_WEIGHTS.get(financial.risk_level, 0.0)
        if compound.is_compound_attack:
            score = min(score + 0.15, 1.0)
        if has_critical:
            score = max(score, 0.8)
        score = min(score, 1.0)

        if score >= 0.8 or has_critical:
            risk_level = RISK_CRITICAL
        elif score >= 0.5:
            risk_level = RISK_HIGH
        elif score >= 0.3:
            risk_level = RISK_MEDIUM
        else:
            risk_level = RISK_LOW

        is_bec = (
            score >= 0.5
            or (impersonation.is_impersonation and financial.has_financial_request)
            or has_critical
        )

        result = BECResult(
            is_bec=is_bec,
            confidence=round(score, 4),
            risk_level=risk_level,
            patterns=patterns,
            impersonation=impersonation,
            financial_risk=financial,
            compound=compound,
        )
        result.summary = self._summary(result)
        if is_bec:
            logger.info(
                "BEC suspected for %s: confidence=%.2f risk=%s patterns=%d",
                email.message_id, result.confidence, risk_level, len(patterns),
            )
        return result

    def _vips_for(self, tenant_id: str) -> list[VIPEntry]:
        return list(self.vips.get(tenant_id, [])) + list(self.vips.get("*", []))

    # ----- Signal mapping -----

    @staticmethod
    def _to_signals(result: BECResult) -> list[Signal]:
        signals: list[Signal] = []

        def add(kind: str, risk: str, detail: str, **metadata):
            severity, score = _SEVERITY_MAP.get(risk, _SEVERITY_MAP[RISK_LOW])
            signals.append(Signal(f"bec_{kind}", severity, score, detail, metadata=metadata))

        for match in result.patterns:
            add(
                match.pattern.id, match.pattern.severity, match.pattern.description,
                category=match.pattern.category,
                evidence=", ".join(match.evidence),
                pattern_score=round(match.score, 2),
            )

        impersonation = result.impersonation
        if impersonation.is_impersonation:
            for finding in impersonation.signals:
                add(finding.type, finding.severity, finding.detail, category="impersonation", **finding.metadata)

        financial = result.financial_risk
        if financial.has_financial_request and financial.max_amount > 0:
            add(
                "financial_amount", financial.risk_level,
                f"Financial amount detected: {_format_amount(financial.max_amount)}",
                category="financial_request",
                evidence=", ".join(original for _, original in financial.amounts),
            )

        if result.compound.is_compound_attack:
            add(
                "compound_attack", result.compound.severity,
                "Multiple BEC attack vectors detected",
                category="multi_vector",
                evidence=result.compound.explanation,
            )

        if impersonation.is_impersonation:
            vip = impersonation.matched_vip
            signals.append(Signal(
                "bec_impersonation", SEVERITY_CRITICAL, IMPERSONATION_SCORE,
                impersonation.explanation,
                metadata={
                    "impersonation_type": impersonation.impersonation_type,
                    "matched_vip": vip.display_name if vip else None,
                    "confidence": impersonation.confidence,
                },
            ))

        if financial.has_financial_request and financial.max_amount > 0:
            severity, score = _FINANCIAL_RISK_MAP.get(financial.risk_level, (SEVERITY_WARNING, 10))
            signals.append(Signal(
                "bec_financial_risk", severity, score,
                f"Financial request detected: {_format_amount(financial.max_amount)}",
                metadata={
                    "amounts": [value for value, _ in financial.amounts],
                    "risk_level": financial.risk_level,
                    "financial_entities": list(financial.financial_entities),
                },
            ))

        if result.is_bec:
            signals.append(Signal(
                "bec_detected", SEVERITY_CRITICAL, BEC_DETECTED_SCORE,
                result.summary,
                metadata={
                    "confidence": result.confidence,
                    "risk_level": result.risk_level,
                    "pattern_count": len(result.patterns),
                },
            ))

        return signals

    def _first_contact_signals(self, email: EmailEvent, result: BECResult) -> list[Signal]:
        if self.history is None or not email.sender:
            return []

        sender_domain = email.sender_domain
        external = [r for r in email.recipients if domain_of(r) != sender_domain]
        first = [
            r for r in external
            if self.history.is_first_contact(email.tenant_id, email.sender, r)
        ]
        if not first:
            return []

        signals: list[Signal] = []
        has_title = executive_title(email.sender_name) is not None
        if has_title:
            detail = "External sender uses executive title keywords in display name"
        else:
            detail = f"This is the first email received from {email.sender.lower()}"
        signals.append(Signal(
            "first_contact",
            SEVERITY_WARNING if has_title else SEVERITY_INFO,
            FIRST_CONTACT_SCORE,
            detail,
            metadata={"recipients": first},
        ))

        vip = result.impersonation.matched_vip
        if vip is not None:
            signals.append(Signal(
                "first_contact_vip_impersonation", SEVERITY_CRITICAL, VIP_FIRST_CONTACT_SCORE,
                f"Potential impersonation of {vip.display_name} ({vip.title or vip.role})",
                metadata={"matched_vip": vip.display_name, "vip_email": vip.email},
            ))
        return signals

    # ----- Summary -----

    @staticmethod
    def _summary(result: BECResult) -> str:
        impersonation = result.impersonation
        financial = result.financial_risk
        if not result.is_bec and not result.patterns and not impersonation.is_impersonation:
            return "No BEC indicators detected"

        parts: list[str] = []
        if impersonation.is_impersonation:
            vip = impersonation.matched_vip
            if vip is not None:
                parts.append(f"Possible impersonation of {vip.display_name} ({vip.role})")
            else:
                parts.append("Executive impersonation attempt detected")

        if financial.has_financial_request and financial.max_amount > 0:
            parts.append(f"Financial request for {_format_amount(financial.max_amount)}")

        seen: list[str] = []
        for match in result.patterns:
            name = CATEGORY_NAMES.get(match.pattern.category)
            if name and name not in seen:
                seen.append(name)
        if seen:
            parts.append("Detected: " + ", ".join(seen))

        return ". ".join(parts) if parts else "Suspicious patterns detected"
