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
MailGuard Detection — Data Models

These dataclasses are the vocabulary every part of the detection core
speaks.

For beginners:
- EmailEvent    = the email that came in (input, already parsed upstream)
- Signal        = one atomic piece of evidence ("SPF failed", "wire transfer request")
- LayerResult   = everything one analysis layer found (intermediate)
- EmailVerdict  = the final decision (output)

Score ranges: every score lives in 0..100 (signal scores are only
required to be non-negative) and every confidence in 0..1.
"""
import math
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from detection.text import domain_of, strip_html


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"
SEVERITIES = (SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_CRITICAL)

LAYER_DETERMINISTIC = "deterministic"
LAYER_REPUTATION = "reputation"
LAYER_ML = "ml"
LAYER_BEC = "bec"
LAYER_LLM = "llm"
LAYER_SANDBOX = "sandbox"
LAYER_BEHAVIORAL = "behavioral"
LAYERS = (
    LAYER_DETERMINISTIC, LAYER_REPUTATION, LAYER_ML, LAYER_BEC,
    LAYER_LLM, LAYER_SANDBOX, LAYER_BEHAVIORAL,
)

VERDICT_PASS = "pass"
VERDICT_SUSPICIOUS = "suspicious"
VERDICT_QUARANTINE = "quarantine"
VERDICT_BLOCK = "block"


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive scores (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Signals and layer results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AmplificationInfo:
    """Audit trail left on a signal whose score was amplified."""
    original_score: float
    multiplier: float


@dataclass(frozen=True)
class Signal:
    """One atomic piece of evidence.

    Signals are immutable. Anything that adjusts a score (amplification)
    builds a new Signal through ``with_score``.

    ``metadata`` is for diagnostic key/values only (hosts, hashes, the
    domain a rule matched). Provenance the scoring engine relies on is
    carried by typed fields.
    """
    type: str
    severity: str
    score: float
    detail: str = ""
    metadata: dict = field(default_factory=dict, compare=False, hash=False)
    amplification: Optional[AmplificationInfo] = None

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise ValueError(f"Unknown signal severity: {self.severity!r}")
        if self.score < 0:
            raise ValueError(f"Signal score must be >= 0, got {self.score}")

    def with_score(self, score: float, amplification: Optional[AmplificationInfo] = None) -> "Signal":
        return replace(self, score=score, amplification=amplification)

    def to_dict(self) -> dict:
        data = {
            "type": self.type,
            "severity": self.severity,
            "score": self.score,
            "detail": self.detail,
            "metadata": dict(self.metadata),
        }
        if self.amplification is not None:
            data["amplification"] = asdict(self.amplification)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Signal":
        amp = data.get("amplification")
        return cls(
            type=data["type"],
            severity=data.get("severity", SEVERITY_INFO),
            score=data.get("score", 0),
            detail=data.get("detail", ""),
            metadata=data.get("metadata", {}) or {},
            amplification=AmplificationInfo(**amp) if amp else None,
        )


@dataclass
class LayerResult:
    """What one analysis layer produced for one email.

    Scores and confidences are clamped into range on construction, so a
    misbehaving analyzer can never push an out-of-range value downstream.
    """
    layer: str
    score: float = 0
    confidence: float = 0.0
    signals: list = field(default_factory=list)
    processing_time_ms: float = 0.0
    skipped: bool = False
    skip_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.score = clamp(self.score, 0, 100)
        self.confidence = clamp(self.confidence, 0.0, 1.0)

    @classmethod
    def skipped_result(cls, layer: str, reason: str, processing_time_ms: float = 0.0) -> "LayerResult":
        return cls(
            layer=layer,
            skipped=True,
            skip_reason=reason,
            processing_time_ms=processing_time_ms,
        )

    def to_dict(self) -> dict:
        return {
            "layer": self.layer,
            "score": self.score,
            "confidence": self.confidence,
            "signals": [s.to_dict() for s in self.signals],
            "processing_time_ms": round(self.processing_time_ms, 2),
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "metadata": self.metadata,
        }


# ---------------------------------------------------------------------------
# Input email
# ---------------------------------------------------------------------------

@dataclass
class EmailAddress:
    """An email sender or recipient."""
    address: str
    name: str = ""


@dataclass
class EmailBody:
    """The content of an email. Either part may be empty."""
    text: str = ""
    html: str = ""


@dataclass
class Attachment:
    """Attachment metadata. Content is optional (base64) and only hashed."""
    name: str = ""
    content_type: str = ""
    size: int = 0
    content_bytes: str = ""
    is_password_protected: bool = False
    has_macros: bool = False


@dataclass
class ThreadContext:
    """Where the message sits in a conversation."""
    is_reply: bool = False
    depth: int = 0
    previous_senders: list = field(default_factory=list)


@dataclass
class EmailEvent:
    """
    A normalized email entering the detection pipeline.

    Key fields:
    - sender / sender_name: who sent it
    - reply_to:             Reply-To address, if different
    - body:                 text and html parts
    - headers:              raw internet message headers (dict)
    - attachments:          attachment metadata
    - sender_domain_age_days: registration age of the sender domain when
                              upstream enrichment knows it
    """
    message_id: str = ""
    user_id: str = ""
    tenant_id: str = ""
    tenant_alias: str = ""
    received_at: str = ""
    sender: str = ""
    sender_name: str = ""
    reply_to: str = ""
    to: list = field(default_factory=list)
    subject: str = ""
    body: EmailBody = field(default_factory=EmailBody)
    headers: dict = field(default_factory=dict)
    attachments: list = field(default_factory=list)
    sender_domain_age_days: Optional[int] = None
    thread: Optional[ThreadContext] = None

    @property
    def sender_domain(self) -> str:
        return domain_of(self.sender)

    @property
    def recipients(self) -> list[str]:
        return [r.address.lower() for r in self.to if r.address]

    @property
    def plain_body(self) -> str:
        """Body as plain text, falling back to stripped HTML."""
        if self.body.text:
            return self.body.text
        if self.body.html:
            return strip_html(self.body.html)
        return ""

    @property
    def full_text(self) -> str:
        return f"Subject: {self.subject or '(no subject)'}\n\n{self.plain_body}"

    @classmethod
    def from_dict(cls, data: dict) -> "EmailEvent":
        """Create an EmailEvent from the JSON dict off the queue.

        Accepts two sender formats:
        - flat:   {"sender": "user@example.com", "sender_name": "..."}
        - schema: {"from": {"address": "user@example.com", "name": "..."}}

        and two body formats:
        - {"body": {"text": "...", "html": "..."}}
        - {"body": {"content_type": "html", "content": "..."}}
        """
        from_data = data.get("from", {}) or {}
        body_data = data.get("body", {}) or {}
        thread_data = data.get("thread")
        headers = data.get("headers", {}) or {}

        sender = from_data.get("address", "") or data.get("sender", "")
        sender_name = from_data.get("name", "") or data.get("sender_name", "")

        if "content" in body_data:
            content = body_data.get("content", "")
            if body_data.get("content_type", "text") == "html":
                body = EmailBody(html=content)
            else:
                body = EmailBody(text=content)
        else:
            body = EmailBody(text=body_data.get("text", ""), html=body_data.get("html", ""))

        reply_to = data.get("reply_to", "")
        if isinstance(reply_to, dict):
            reply_to = reply_to.get("address", "")
        if not reply_to:
            reply_to = headers.get("Reply-To", "")

        return cls(
            message_id=data.get("message_id", ""),
            user_id=data.get("user_id", ""),
            tenant_id=data.get("tenant_id", ""),
            tenant_alias=data.get("tenant_alias", ""),
            received_at=data.get("received_at", ""),
            sender=sender,
            sender_name=sender_name,
            reply_to=reply_to,
            to=[EmailAddress(**r) for r in data.get("to", [])],
            subject=data.get("subject", ""),
            body=body,
            headers=headers,
            attachments=[Attachment(**a) for a in data.get("attachments", [])],
            sender_domain_age_days=data.get("sender_domain_age_days"),
            thread=ThreadContext(**thread_data) if thread_data else None,
        )


# ---------------------------------------------------------------------------
# Collaborator results
# ---------------------------------------------------------------------------

@dataclass
class PolicyResult:
    """Outcome of the pre-analysis policy check."""
    matched: bool = False
    action: str = "none"          # allow | block | quarantine | tag | none
    policy_id: str = ""
    policy_name: str = ""
    reason: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SenderInfo:
    """A known sender from the registry."""
    domain: str
    name: str = ""
    category: str = "unknown"
    trust_score: int = 0
    tracking_domains: list = field(default_factory=list)
    reply_to_domains: list = field(default_factory=list)


@dataclass
class Classification:
    """What kind of email this is, decided before threat detection."""
    type: str = "unknown"         # marketing | transactional | automated | personal | unknown
    confidence: float = 0.5
    is_known_sender: bool = False
    sender_info: Optional[SenderInfo] = None
    threat_score_modifier: float = 1.0
    skip_bec_detection: bool = False
    skip_gift_card_detection: bool = False
    marketing_signals: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "confidence": self.confidence,
            "is_known_sender": self.is_known_sender,
            "sender_name": self.sender_info.name if self.sender_info else None,
            "sender_category": self.sender_info.category if self.sender_info else None,
            "threat_score_modifier": self.threat_score_modifier,
            "skip_bec_detection": self.skip_bec_detection,
            "skip_gift_card_detection": self.skip_gift_card_detection,
            "marketing_signals": list(self.marketing_signals),
        }


@dataclass
class ReputationContext:
    """Sender-level facts the enhanced reputation layer learned."""
    trust_modifier: float = 1.0
    known_tracking_domains: list = field(default_factory=list)
    is_known_sender: bool = False
    is_trusted_category: bool = False
    sender_name: str = ""
    sender_category: str = ""
    reply_to_domains: list = field(default_factory=list)


@dataclass
class FeedbackContext:
    """Operator feedback history for a sender / signal pattern."""
    sender_marked_safe: bool = False
    feedback_count: int = 0
    last_feedback_at: Optional[datetime] = None
    similar_pattern_fp_rate: float = 0.0
    similar_pattern_count: int = 0


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

@dataclass
class EmailVerdict:
    """The terminal output of one pipeline run."""
    message_id: str
    tenant_id: str
    verdict: str
    overall_score: int
    confidence: float
    signals: list = field(default_factory=list)
    layer_results: list = field(default_factory=list)
    explanation: str = ""
    recommendation: str = ""
    processing_time_ms: float = 0.0
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    policy_applied: Optional[PolicyResult] = None
    classification: Optional[Classification] = None
    compound_patterns: list = field(default_factory=list)
    llm_tokens_used: Optional[int] = None

    def to_dict(self) -> dict:
        """Serialise verdict to a JSON-safe dict for the queue."""
        return {
            "message_id": self.message_id,
            "tenant_id": self.tenant_id,
            "verdict": self.verdict,
            "overall_score": self.overall_score,
            "confidence": round(self.confidence, 4),
            "signals": [s.to_dict() for s in self.signals],
            "layer_results": [lr.to_dict() for lr in self.layer_results],
            "explanation": self.explanation,
            "recommendation": self.recommendation,
            "processing_time_ms": round(self.processing_time_ms, 2),
            "analyzed_at": self.analyzed_at.isoformat(),
            "policy_applied": self.policy_applied.to_dict() if self.policy_applied else None,
            "classification": self.classification.to_dict() if self.classification else None,
            "compound_patterns": list(self.compound_patterns),
            "llm_tokens_used": self.llm_tokens_used,
        }
