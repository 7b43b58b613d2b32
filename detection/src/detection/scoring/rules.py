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
Score engine rule tables.

Everything the aggregation engine treats as policy (which signal types
count as attack patterns, which may be amplified, which compound patterns
exist, how layers are weighted) lives here as data so it can be reviewed
and tested without reading the engine.
"""
from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Signal type sets
# ---------------------------------------------------------------------------

#: Distinct types counted towards the synergy bonus (in addition to any
#: warning/critical signal).
ATTACK_PATTERN_SIGNALS: frozenset[str] = frozenset({
    "bec_detected",
    "bec_impersonation",
    "bec_financial_risk",
    "bec_wire_transfer_request",
    "bec_gift_card_scam",
    "bec_invoice_fraud",
    "bec_payroll_diversion",
    "bec_urgency_pressure",
    "bec_secrecy_request",
    "bec_authority_manipulation",
    "display_name_spoof",
    "free_email_provider",
    "homoglyph",
    "cousin_domain",
    "reply_to_mismatch",
    "first_contact",
    "first_contact_vip_impersonation",
    "credential_request",
    "financial_request",
    "malicious_url",
    "dangerous_url",
    "phishing_link",
})

#: Types whose score may be raised by first-contact amplification.
AMPLIFIABLE_SIGNALS: frozenset[str] = frozenset({
    "bec_detected",
    "bec_impersonation",
    "bec_financial_risk",
    "bec_wire_transfer_request",
    "bec_gift_card_scam",
    "bec_invoice_fraud",
    "bec_payroll_diversion",
    "credential_request",
    "financial_request",
    "malicious_url",
    "first_contact_vip_impersonation",
})

#: Fraud types that, at critical severity, disable the thread, feedback
#: and institutional dampeners.
CRITICAL_BEC_SIGNALS: frozenset[str] = frozenset({
    "bec_wire_transfer_request",
    "bec_impersonation",
    "bec_gift_card_scam",
    "bec_invoice_fraud",
    "bec_payroll_diversion",
})

FIRST_CONTACT_SIGNALS: frozenset[str] = frozenset({"first_contact", "first_contact_vip_impersonation"})
FINANCIAL_REQUEST_SIGNALS: frozenset[str] = frozenset({
    "bec_financial_risk", "bec_wire_transfer_request", "financial_request",
})
VIP_SIGNALS: frozenset[str] = frozenset({"first_contact_vip_impersonation", "vip_impersonation"})
BEHAVIORAL_ANOMALY_SIGNALS: frozenset[str] = frozenset({"anomaly_detected", "behavioral_anomaly"})
SPOOF_SIGNALS: frozenset[str] = frozenset({"homoglyph", "lookalike_homoglyph", "cousin_domain"})

#: Words in a signal detail that mark executive-title targeting
EXECUTIVE_TITLE_WORDS: tuple[str, ...] = ("executive", "ceo", "cfo", "president")


# ---------------------------------------------------------------------------
# Compound attack patterns
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompoundPattern:
    """A named combination of signal types.

    Matches when at least ``min_required`` of ``required`` and at least
    ``min_optional`` of ``optional`` are present.
    """
    name: str
    required: frozenset
    optional: frozenset
    min_required: int
    min_optional: int

    def matches(self, signal_types: set) -> bool:
        required_hits = len(self.required & signal_types)
        optional_hits = len(self.optional & signal_types)
        return required_hits >= self.min_required and optional_hits >= self.min_optional


COMPOUND_PATTERNS: tuple[CompoundPattern, ...] = (
    CompoundPattern(
        name="ceo_fraud",
        required=frozenset({"bec_impersonation"}),
        optional=frozenset({
            "bec_wire_transfer_request", "bec_secrecy_request",
            "bec_urgency_pressure", "bec_financial_risk",
        }),
        min_required=1,
        min_optional=1,
    ),
    CompoundPattern(
        name="executive_impersonation",
        required=frozenset({"bec_impersonation", "bec_financial_risk"}),
        optional=frozenset({"first_contact", "bec_urgency_pressure", "free_email_provider"}),
        min_required=2,
        min_optional=0,
    ),
    CompoundPattern(
        name="vendor_fraud",
        required=frozenset({"bec_invoice_fraud"}),
        optional=frozenset({"first_contact", "cousin_domain", "free_email_provider"}),
        min_required=1,
        min_optional=1,
    ),
    CompoundPattern(
        name="gift_card_scam",
        required=frozenset({"bec_gift_card_scam"}),
        optional=frozenset({"bec_urgency_pressure", "display_name_spoof", "free_email_provider"}),
        min_required=1,
        min_optional=1,
    ),
    CompoundPattern(
        name="credential_phishing",
        required=frozenset({"credential_request"}),
        optional=frozenset({"malicious_url", "dangerous_url", "homoglyph", "cousin_domain"}),
        min_required=1,
        min_optional=1,
    ),
    CompoundPattern(
        name="bec_pressure_campaign",
        required=frozenset({"bec_urgency_pressure"}),
        optional=frozenset({
            "bec_financial_risk", "bec_impersonation",
            "first_contact", "free_email_provider",
        }),
        min_required=1,
        min_optional=2,
    ),
)


# ---------------------------------------------------------------------------
# Layer weights and additive terms
# ---------------------------------------------------------------------------

LAYER_WEIGHTS: dict[str, float] = {
    "deterministic": 0.25,
    "reputation": 0.15,
    "ml": 0.15,
    "bec": 0.20,
    "llm": 0.10,
    "sandbox": 0.05,
    "behavioral": 0.10,
}
DEFAULT_LAYER_WEIGHT = 0.05

#: Share of the weighted layer average that reaches the overall score
WEIGHTED_SCORE_FACTOR = 0.4

CORE_LAYERS: tuple[str, ...] = ("deterministic", "reputation", "ml", "bec")

CRITICAL_BOOST_PER_SIGNAL = 5
CRITICAL_BOOST_CAP = 20
WARNING_BOOST_PER_SIGNAL = 2
WARNING_BOOST_CAP = 10
SIGNAL_SCORE_FACTOR = 0.25
SIGNAL_SCORE_CAP = 30
AMPLIFICATION_BONUS = 8
BEHAVIORAL_BONUS = 3

#: pattern count -> bonus, checked from the top
SYNERGY_TIERS: tuple[tuple[int, int], ...] = ((4, 8), (3, 6), (2, 4))
SYNERGY_CAP = 8


# ---------------------------------------------------------------------------
# Amplification
# ---------------------------------------------------------------------------

AMPLIFIED_SCORE_CAP = 55
ESTABLISHED_DOMAIN_DAYS = 365
NEW_DOMAIN_DAYS = 30
NEW_DOMAIN_MULTIPLIER = 1.2
MEDIUM_DOMAIN_MULTIPLIER = 1.1
EXECUTIVE_MULTIPLIER = 0.2
FINANCIAL_MULTIPLIER = 0.1
VIP_MULTIPLIER = 0.2
AMPLIFIED_SUMMARY_SCORE = 15


# ---------------------------------------------------------------------------
# Dampening
# ---------------------------------------------------------------------------

MARKETING_DAMPENING = 0.7
INSTITUTIONAL_DAMPENING = 0.5
THREAD_DAMPENING = 0.6
SAFE_ATTACHMENT_DAMPENING = 0.8
FEEDBACK_DAMPENING = 0.7
PATTERN_FP_DAMPENING = 0.85

FEEDBACK_EXPIRY_DAYS = 90
PATTERN_FP_MIN_SAMPLES = 20
PATTERN_FP_RATE = 0.1

INSTITUTIONAL_TLDS: tuple[str, ...] = (".gov", ".edu", ".mil")

KNOWN_NONPROFIT_DOMAINS: frozenset[str] = frozenset({
    "redcross.org",
    "unicef.org",
    "who.int",
    "un.org",
    "unesco.org",
    "worldbank.org",
    "imf.org",
    "nih.gov",
    "cdc.gov",
    "fda.gov",
    "fbi.gov",
    "cia.gov",
    "nasa.gov",
    "noaa.gov",
})

SAFE_DOCUMENT_MARKERS: tuple[str, ...] = ("pdf", "word", "document")
