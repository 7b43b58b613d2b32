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
Email Type Classification

Decides what kind of email this is BEFORE threat detection runs, so the
pipeline can relax rules that misfire on legitimate bulk mail (a retailer
mentioning gift cards is not a gift card scam).

Types:
    marketing      promotional mail, newsletters
    transactional  receipts, shipping, password resets
    automated      alerts, notifications, system mail
    personal       1:1 conversation
    unknown        cannot tell

Signals used, in order of precedence:
    1. the known sender registry (category + trust score)
    2. marketing header / body signals
    3. transactional and automated subject / sender patterns
    4. conversational cues
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from detection.models import Classification, EmailEvent, SenderInfo
from detection.text import domain_of, root_domain

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Known sender registry
# ---------------------------------------------------------------------------

CATEGORY_RETAIL = "retail"
CATEGORY_ECOMMERCE = "ecommerce"
CATEGORY_MARKETING = "marketing"
CATEGORY_TRANSACTIONAL = "transactional"
CATEGORY_FINANCIAL = "financial"
CATEGORY_SAAS = "saas"
CATEGORY_SOCIAL = "social"
CATEGORY_AUTOMATED = "automated"
CATEGORY_TRUSTED = "trusted"
CATEGORY_UNKNOWN = "unknown"

DEFAULT_KNOWN_SENDERS: list[dict] = [
    # Retail / e-commerce
    {"domain": "amazon.com", "name": "Amazon", "category": CATEGORY_RETAIL, "trust_score": 85,
     "sub_domains": ["email.amazon.com", "amazon.co.uk", "amazon.de", "amazon.ca"],
     "tracking_domains": ["amazon.com", "a.co"]},
    {"domain": "bestbuy.com", "name": "Best Buy", "category": CATEGORY_RETAIL, "trust_score": 80,
     "sub_domains": ["email.bestbuy.com", "emailinfo.bestbuy.com"]},
    {"domain": "target.com", "name": "Target", "category": CATEGORY_RETAIL, "trust_score": 80,
     "sub_domains": ["email.target.com", "target.narvar.com"], "tracking_domains": ["narvar.com"]},
    {"domain": "walmart.com", "name": "Walmart", "category": CATEGORY_RETAIL, "trust_score": 80,
     "sub_domains": ["email.walmart.com"], "tracking_domains": ["narvar.com"]},
    {"domain": "costco.com", "name": "Costco", "category": CATEGORY_RETAIL, "trust_score": 80},
    {"domain": "ebay.com", "name": "eBay", "category": CATEGORY_ECOMMERCE, "trust_score": 75,
     "sub_domains": ["reply.ebay.com", "srn.ebay.com"], "reply_to_domains": ["reply.ebay.com"]},
    {"domain": "etsy.com", "name": "Etsy", "category": CATEGORY_ECOMMERCE, "trust_score": 75,
     "sub_domains": ["mail.etsy.com", "transaction.etsy.com"]},
    {"domain": "shopify.com", "name": "Shopify", "category": CATEGORY_ECOMMERCE, "trust_score": 75},

    # Marketing platforms
    {"domain": "mailchimp.com", "name": "Mailchimp", "category": CATEGORY_MARKETING, "trust_score": 70,
     "sub_domains": ["mcsv.net", "mcdlv.net"], "tracking_domains": ["list-manage.com", "mailchi.mp"]},
    {"domain": "sendgrid.net", "name": "SendGrid", "category": CATEGORY_MARKETING, "trust_score": 60,
     "tracking_domains": ["sendgrid.net"]},
    {"domain": "hubspot.com", "name": "HubSpot", "category": CATEGORY_MARKETING, "trust_score": 70,
     "tracking_domains": ["hubspotlinks.com", "hs-sites.com"]},

    # Transactional / financial
    {"domain": "paypal.com", "name": "PayPal", "category": CATEGORY_FINANCIAL, "trust_score": 90},
    {"domain": "stripe.com", "name": "Stripe", "category": CATEGORY_TRANSACTIONAL, "trust_score": 90},
    {"domain": "chase.com", "name": "Chase", "category": CATEGORY_FINANCIAL, "trust_score": 90},
    {"domain": "fedex.com", "name": "FedEx", "category": CATEGORY_TRANSACTIONAL, "trust_score": 80},
    {"domain": "ups.com", "name": "UPS", "category": CATEGORY_TRANSACTIONAL, "trust_score": 80},
    {"domain": "usps.com", "name": "USPS", "category": CATEGORY_TRANSACTIONAL, "trust_score": 80},

    # SaaS / automated
    {"domain": "github.com", "name": "GitHub", "category": CATEGORY_SAAS, "trust_score": 90},
    {"domain": "slack.com", "name": "Slack", "category": CATEGORY_SAAS, "trust_score": 90},
    {"domain": "atlassian.com", "name": "Atlassian", "category": CATEGORY_SAAS, "trust_score": 90,
     "sub_domains": ["atlassian.net"]},
    {"domain": "google.com", "name": "Google", "category": CATEGORY_SAAS, "trust_score": 95,
     "sub_domains": ["googlemail.com", "accounts.google.com"]},
    {"domain": "microsoft.com", "name": "Microsoft", "category": CATEGORY_SAAS, "trust_score": 95,
     "sub_domains": ["office.com", "azure.com"]},
    {"domain": "apple.com", "name": "Apple", "category": CATEGORY_SAAS, "trust_score": 95,
     "sub_domains": ["id.apple.com"]},

    # Social
    {"domain": "linkedin.com", "name": "LinkedIn", "category": CATEGORY_SOCIAL, "trust_score": 75},
    {"domain": "facebookmail.com", "name": "Facebook", "category": CATEGORY_SOCIAL, "trust_score": 75},
]


def _sender_info(entry: dict) -> SenderInfo:
    return SenderInfo(
        domain=entry["domain"].lower(),
        name=entry.get("name", entry["domain"]),
        category=entry.get("category", CATEGORY_UNKNOWN),
        trust_score=int(entry.get("trust_score", 0)),
        tracking_domains=[d.lower() for d in entry.get("tracking_domains", [])],
        reply_to_domains=[d.lower() for d in entry.get("reply_to_domains", [])],
    )


class SenderRegistry:
    """Known legitimate senders, indexed by domain and sub-domain.

    Built from the defaults above plus the ``known_senders:`` section of
    config.yaml (tenant-trusted partners go there with category "trusted").
    """

    def __init__(self, entries: Optional[list[dict]] = None, include_defaults: bool = True):
        self._domains: dict[str, SenderInfo] = {}
        self._sub_domains: dict[str, SenderInfo] = {}
        for entry in (DEFAULT_KNOWN_SENDERS if include_defaults else []) + list(entries or []):
            self.add(entry)

    def add(self, entry: dict) -> SenderInfo:
        info = _sender_info(entry)
        self._domains[info.domain] = info
        for sub in entry.get("sub_domains", []):
            self._sub_domains[sub.lower()] = info
        return info

    def lookup(self, domain: str) -> Optional[SenderInfo]:
        if not domain:
            return None
        domain = domain.lower()
        if domain in self._domains:
            return self._domains[domain]
        if domain in self._sub_domains:
            return self._sub_domains[domain]
        return self._domains.get(root_domain(domain))

    def __len__(self) -> int:
        return len(self._domains)


# ---------------------------------------------------------------------------
# Marketing signals
# ---------------------------------------------------------------------------

_MARKETING_MAILERS = frozenset({
    "mailchimp", "sendgrid", "marketo", "hubspot",
    "pardot", "constant contact", "brevo", "mailgun",
    "customer.io", "iterable", "klaviyo",
})

_BULK_HEADERS = frozenset({
    "list-unsubscribe", "list-unsubscribe-post", "x-campaign", "x-mailgun",
    "x-sendgrid", "x-mailchimp", "x-mc-user", "x-ses-outgoing", "feedback-id",
})

_PROMO_SUBJECT = re.compile(
    r"\b(\d+%?\s*off|sale|deal|discount|promo|coupon|offer|free shipping|clearance|"
    r"limited time|flash sale|last chance|newsletter|weekly|monthly|digest|"
    r"shop now|new arrivals?|gift guide)\b",
    re.IGNORECASE,
)
_UNSUBSCRIBE = re.compile(r"unsubscribe|opt[- ]?out|email preferences", re.IGNORECASE)
_VIEW_IN_BROWSER = re.compile(r"view (this email )?(online|in (your )?browser)|web version", re.IGNORECASE)
_DISCOUNT = re.compile(r"\b\d+%\s*(off|discount)|\$\d+\s*off|free\s+shipping", re.IGNORECASE)
_FOOTER = re.compile(r"©\s*\d{4}|copyright|all rights reserved", re.IGNORECASE)
_SOCIAL = re.compile(r"(facebook|twitter|instagram|linkedin|youtube|pinterest|tiktok)\.com", re.IGNORECASE)


@dataclass
class MarketingSignals:
    is_marketing: bool = False
    confidence: float = 0.0
    signals: list = field(default_factory=list)

    @property
    def signal_count(self) -> int:
        return len(self.signals)


def _header(headers: dict, name: str) -> str:
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return str(value)
    return ""


def detect_marketing_signals(email: EmailEvent) -> MarketingSignals:
    """Score how much an email looks like bulk/marketing mail."""
    headers = email.headers or {}
    lower_headers = {k.lower() for k in headers}
    body = f"{email.body.text}\n{email.body.html}"
    signals: list[str] = []
    confidence = 0.0

    has_unsubscribe_header = bool(_header(headers, "List-Unsubscribe"))
    has_unsubscribe_link = bool(_UNSUBSCRIBE.search(body))
    if has_unsubscribe_header:
        signals.append("unsubscribe_header")
    if has_unsubscribe_link:
        signals.append("unsubscribe_link")
    if has_unsubscribe_header or has_unsubscribe_link:
        confidence += 0.25

    if _header(headers, "Precedence").lower() in ("bulk", "list") or lower_headers & _BULK_HEADERS:
        signals.append("bulk_headers")
        confidence += 0.15

    auto_submitted = _header(headers, "Auto-Submitted").lower()
    if auto_submitted and auto_submitted != "no":
        signals.append("auto_submitted")

    x_mailer = _header(headers, "X-Mailer").lower()
    if any(mailer in x_mailer for mailer in _MARKETING_MAILERS):
        signals.append("marketing_mailer")
        confidence += 0.15

    if _VIEW_IN_BROWSER.search(body):
        signals.append("view_in_browser")
        confidence += 0.15
    if _PROMO_SUBJECT.search(email.subject or ""):
        signals.append("promo_subject")
        confidence += 0.15
    if _DISCOUNT.search(body):
        signals.append("discount_offer")
        confidence += 0.10
    if _FOOTER.search(body):
        signals.append("marketing_footer")
        confidence += 0.10
    if _SOCIAL.search(body):
        signals.append("social_links")
        confidence += 0.05

    confidence = round(min(0.95, confidence), 2)
    is_marketing = confidence >= 0.5 or (has_unsubscribe_link and len(signals) >= 3)
    return MarketingSignals(is_marketing=is_marketing, confidence=confidence, signals=signals)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

_TRANSACTIONAL_SUBJECTS = [re.compile(p, re.IGNORECASE) for p in (
    r"order\s*(confirmation|confirmed|#|number)",
    r"receipt\s*(for|from)",
    r"invoice\s*(#|number|from)",
    r"payment\s*(received|confirmed|processed)",
    r"shipping\s*(confirmation|update|notification)",
    r"your\s*(order|purchase|subscription)",
    r"delivery\s*(update|notification|confirmed)",
    r"booking\s*(confirmation|confirmed)",
    r"reservation\s*(confirmation|confirmed)",
    r"account\s*(created|verified|activated)",
    r"welcome\s+to",
    r"verify\s+your\s+email",
    r"password\s+reset",
    r"two-factor|2fa|verification\s+code",
)]

_AUTOMATED_SUBJECTS = [re.compile(p, re.IGNORECASE) for p in (
    r"\[alert\]|\[notification\]|\[reminder\]",
    r"automated\s+(message|notification|alert)",
    r"system\s+(notification|alert|message)",
    r"do\s+not\s+reply",
    r"calendar\s+(invitation|reminder|event)",
    r"meeting\s+(invitation|reminder|request)",
    r"build\s+(failed|succeeded|passing)",
    r"deployment\s+(failed|succeeded|complete)",
)]

_AUTOMATED_SENDERS = re.compile(
    r"^(no[-_]?reply|do[-_]?not[-_]?reply|notifications?|alerts?|system|automated|"
    r"mailer[-_]?daemon|postmaster|support|help|info|news(letter)?|promo(tions)?|"
    r"marketing|sales|team)@",
    re.IGNORECASE,
)

_REPLY_SUBJECT = re.compile(r"^(re|fw|fwd):", re.IGNORECASE)
_CONVERSATIONAL = [re.compile(p, re.IGNORECASE) for p in (
    r"^(hi|hello|hey|dear)\s",
    r"can you|could you|would you|will you",
    r"let me know|get back to me|reach out",
    r"thanks|thank you|regards",
)]

_CATEGORY_TYPES = {
    CATEGORY_MARKETING: ("marketing", 0.9),
    CATEGORY_RETAIL: ("marketing", 0.9),
    CATEGORY_ECOMMERCE: ("marketing", 0.9),
    CATEGORY_TRANSACTIONAL: ("transactional", 0.9),
    CATEGORY_FINANCIAL: ("transactional", 0.9),
    CATEGORY_AUTOMATED: ("automated", 0.85),
    CATEGORY_SAAS: ("automated", 0.85),
    CATEGORY_TRUSTED: ("personal", 0.8),
}


class EmailTypeClassifier:
    """Classify an email before threat detection.

    Usage:
        classifier = EmailTypeClassifier(SenderRegistry(get_known_senders()))
        classification = classifier.classify(email)
    """

    def __init__(self, registry: Optional[SenderRegistry] = None):
        self.registry = registry or SenderRegistry()

    def classify(self, email: EmailEvent) -> Classification:
        sender = (email.sender or "").lower()
        sender_info = self.registry.lookup(domain_of(sender))
        marketing = detect_marketing_signals(email)
        subject = email.subject or ""

        is_transactional = any(p.search(subject) for p in _TRANSACTIONAL_SUBJECTS)
        is_automated = (
            any(p.search(subject) for p in _AUTOMATED_SUBJECTS)
            or bool(_AUTOMATED_SENDERS.match(sender))
        )

        email_type, confidence = "unknown", 0.5
        if sender_info and sender_info.category in _CATEGORY_TYPES:
            email_type, confidence = _CATEGORY_TYPES[sender_info.category]

        if email_type == "unknown":
            if marketing.is_marketing and marketing.confidence > 0.7:
                email_type, confidence = "marketing", marketing.confidence
            elif is_transactional:
                email_type, confidence = "transactional", 0.75
            elif is_automated:
                email_type, confidence = "automated", 0.7
            elif self._is_direct_communication(email):
                email_type, confidence = "personal", 0.6

        category = sender_info.category if sender_info else CATEGORY_UNKNOWN
        classification = Classification(
            type=email_type,
            confidence=confidence,
            is_known_sender=sender_info is not None and category != CATEGORY_UNKNOWN,
            sender_info=sender_info,
            threat_score_modifier=self._threat_score_modifier(email_type, category, marketing),
            skip_bec_detection=email_type in ("marketing", "transactional"),
            skip_gift_card_detection=(
                email_type == "marketing" or category in (CATEGORY_RETAIL, CATEGORY_ECOMMERCE)
            ),
            marketing_signals=list(marketing.signals),
        )
        logger.debug(
            "Classified %s as %s (%.2f), known_sender=%s",
            email.message_id, classification.type, classification.confidence,
            classification.is_known_sender,
        )
        return classification

    @staticmethod
    def _is_direct_communication(email: EmailEvent) -> bool:
        if _REPLY_SUBJECT.match(email.subject or ""):
            return True
        body = email.plain_body
        if "unsubscribe" in body.lower():
            return False
        return any(p.search(body) for p in _CONVERSATIONAL)

    @staticmethod
    def _threat_score_modifier(email_type: str, category: str, marketing: MarketingSignals) -> float:
        if category == CATEGORY_TRUSTED:
            return 0.2
        if category in (CATEGORY_RETAIL, CATEGORY_ECOMMERCE, CATEGORY_MARKETING):
            return 0.3
        if email_type == "marketing" and marketing.is_marketing:
            return 0.4 if marketing.signal_count >= 4 else 0.5
        if email_type == "transactional":
            return 0.6
        if email_type == "automated":
            return 0.7
        return 1.0
