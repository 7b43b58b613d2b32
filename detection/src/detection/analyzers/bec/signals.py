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
BEC Analyzer — Content Signal Scanner

Regex / keyword layer over subject and body. All signals are computed at
zero ML cost:

  - the BEC pattern library (wire, gift card, invoice, payroll, urgency,
    secrecy, authority, credential wording)
  - money amounts and how large they are
  - financial entities (routing / account numbers, bank names)
  - compound attacks (a financial pattern combined with pressure)
"""
import re

from detection.analyzers.bec.models import (
    RISK_CRITICAL,
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    AmountRisk,
    BECPattern,
    CompoundAttack,
    PatternMatch,
)


# ---------------------------------------------------------------------------
# Keyword lists
# ---------------------------------------------------------------------------

_WIRE_KEYWORDS = (
    "wire transfer", "wire payment", "wire funds",
    "bank transfer", "bank wire", "transfer funds",
    "send payment", "payment instruction", "payment details",
    "banking information", "bank account", "routing number",
    "swift code", "iban", "aba number",
    "account number", "beneficiary",
)

_GIFT_CARD_KEYWORDS = (
    "gift card", "gift cards", "itunes card", "itunes cards",
    "google play card", "google play cards", "google play",
    "amazon card", "amazon cards", "amazon gift",
    "steam card", "steam cards", "visa gift", "visa cards",
    "prepaid card", "prepaid cards", "buy cards", "purchase cards",
    "scratch off", "redemption code", "card numbers", "pin numbers",
)

_INVOICE_KEYWORDS = (
    "updated invoice", "revised invoice", "new invoice",
    "banking changed", "account changed", "payment method changed",
    "vendor change", "supplier change", "new bank details",
    "payment redirect", "updated payment",
)

_PAYROLL_KEYWORDS = (
    "direct deposit", "change my direct deposit", "update payroll",
    "w-2", "w2 form", "tax form", "employee tax",
    "payroll change", "salary deposit", "pay stub",
)

_URGENCY_KEYWORDS = (
    "urgent", "urgently", "asap", "immediately", "right away",
    "time sensitive", "critical", "important", "priority",
    "today", "now", "before end of day", "before close",
    "deadline", "must be done", "need this done",
    "don't delay", "cannot wait", "can't wait",
)

_SECRECY_KEYWORDS = (
    "confidential", "keep this between us", "private matter",
    "don't tell anyone", "just between us", "secret",
    "don't mention", "discreet", "quietly",
    "don't involve", "bypass", "skip the usual",
)

_AUTHORITY_KEYWORDS = (
    "i need you to", "i'm asking you", "can you handle",
    "take care of this", "personal favor", "trust you",
    "count on you", "rely on you", "need your help",
    "i'm in a meeting", "traveling", "out of office",
    "can't call", "can't talk", "email only",
)

_CREDENTIAL_KEYWORDS = (
    "password", "verify your account", "credentials",
    "reset your password", "security code", "one-time password",
    "login details", "sign-in details",
)


# ---------------------------------------------------------------------------
# Pattern library
# ---------------------------------------------------------------------------

BEC_PATTERNS: tuple[BECPattern, ...] = (
    BECPattern(
        id="wire_transfer_request",
        category="wire_fraud",
        severity=RISK_CRITICAL,
        description="Request to initiate or redirect wire transfer",
        keywords=_WIRE_KEYWORDS,
        keyword_weight=0.3,
        regex=re.compile(r"(?:wire|transfer|send)\s+(?:the\s+)?(?:funds?|money|payment)", re.IGNORECASE),
        regex_weight=0.4,
    ),
    BECPattern(
        id="gift_card_scam",
        category="gift_card",
        severity=RISK_HIGH,
        description="Request to purchase gift cards",
        keywords=_GIFT_CARD_KEYWORDS,
        keyword_weight=0.35,
        regex=re.compile(r"(?:buy|purchase|get)\s+(?:some\s+)?(?:\d+\s+)?gift\s*cards?", re.IGNORECASE),
        regex_weight=0.5,
    ),
    BECPattern(
        id="invoice_fraud",
        category="invoice_fraud",
        severity=RISK_CRITICAL,
        description="Attempt to redirect invoice payments",
        keywords=_INVOICE_KEYWORDS,
        keyword_weight=0.3,
        regex=re.compile(
            r"(?:our|my)\s+(?:bank(?:ing)?|account)\s+(?:details?|info(?:rmation)?)\s+(?:has|have)\s+changed",
            re.IGNORECASE,
        ),
        regex_weight=0.5,
    ),
    BECPattern(
        id="payroll_diversion",
        category="payroll_diversion",
        severity=RISK_HIGH,
        description="Attempt to redirect payroll or obtain tax info",
        keywords=_PAYROLL_KEYWORDS,
        keyword_weight=0.3,
        regex=re.compile(r"(?:change|update)\s+(?:my\s+)?direct\s+deposit", re.IGNORECASE),
        regex_weight=0.5,
    ),
    BECPattern(
        id="urgency_pressure",
        category="urgency_pressure",
        severity=RISK_MEDIUM,
        description="High-pressure tactics to rush decision",
        keywords=_URGENCY_KEYWORDS,
        keyword_weight=0.2,
        regex=re.compile(
            r"(?:need|must|have to)\s+(?:be\s+)?(?:done|completed?|sent)\s+(?:by\s+)?(?:today|now|immediately)",
            re.IGNORECASE,
        ),
        regex_weight=0.3,
    ),
    BECPattern(
        id="secrecy_request",
        category="executive_spoof",
        severity=RISK_HIGH,
        description="Request to keep transaction confidential",
        keywords=_SECRECY_KEYWORDS,
        keyword_weight=0.25,
        regex=re.compile(r"(?:keep|this)\s+(?:is\s+)?(?:between\s+us|confidential|private)", re.IGNORECASE),
        regex_weight=0.4,
    ),
    BECPattern(
        id="authority_manipulation",
        category="executive_spoof",
        severity=RISK_MEDIUM,
        description="Using authority/trust to pressure action",
        keywords=_AUTHORITY_KEYWORDS,
        keyword_weight=0.2,
    ),
    BECPattern(
        id="credential_request",
        category="credential_theft",
        severity=RISK_MEDIUM,
        description="Request for passwords or account verification",
        keywords=_CREDENTIAL_KEYWORDS,
        keyword_weight=0.25,
    ),
)

#: Pattern category -> phrase used in the human-readable summary
CATEGORY_NAMES: dict[str, str] = {
    "wire_fraud": "wire transfer request",
    "gift_card": "gift card scam",
    "invoice_fraud": "invoice fraud",
    "payroll_diversion": "payroll diversion",
    "urgency_pressure": "urgency tactics",
    "executive_spoof": "authority manipulation",
    "credential_theft": "credential request",
}

FINANCIAL_CATEGORIES = frozenset({"wire_fraud", "gift_card", "invoice_fraud", "payroll_diversion"})
PRESSURE_CATEGORIES = frozenset({"urgency_pressure", "executive_spoof"})

#: Any of these combinations is a critical compound attack
CRITICAL_COMBINATIONS: tuple[tuple[str, str], ...] = (
    ("wire_fraud", "urgency_pressure"),
    ("wire_fraud", "executive_spoof"),
    ("gift_card", "executive_spoof"),
    ("invoice_fraud", "urgency_pressure"),
)


# ---------------------------------------------------------------------------
# Amount / entity extraction regex
# ---------------------------------------------------------------------------

AMOUNT_PATTERNS = (
    re.compile(r"\$\s*\d[\d,]*(?:\.\d{2})?"),                                   # $1,000.00
    re.compile(r"\d+(?:,\d{3})*(?:\.\d{2})?\s*(?:usd|dollars?)\b", re.IGNORECASE),  # 1000 USD
    re.compile(r"\b(?:usd|dollars?)\s*\d+(?:,\d{3})*(?:\.\d{2})?", re.IGNORECASE),  # USD 1000
)

#: Regex for routing numbers (9-digit near financial context).
_ROUTING_RE = re.compile(
    r"(?:routing|aba|transit)[^\d]{0,20}(\d{9})\b", re.IGNORECASE,
)
#: Regex for account numbers (8-17 digits near account context).
_ACCOUNT_RE = re.compile(
    r"(?:account|acct)[^\d]{0,20}(\d{8,17})\b", re.IGNORECASE,
)
#: Regex for bank names (common pattern: "Bank: <Name>").
_BANK_NAME_RE = re.compile(
    r"\bbank:\s*([A-Z][A-Za-z&'. ]{2,30})",
)

# Whole-word, case-insensitive matcher per keyword phrase
_KEYWORD_RES: dict[str, re.Pattern] = {
    keyword: re.compile(r"(?<!\w)" + re.escape(keyword) + r"(?!\w)", re.IGNORECASE)
    for pattern in BEC_PATTERNS
    for keyword in pattern.keywords
}


# ---------------------------------------------------------------------------
# Scanners
# ---------------------------------------------------------------------------

def scan_patterns(subject: str, body: str) -> list[PatternMatch]:
    """Check subject and body against the pattern library.

    Returns the patterns that fired, highest score first.
    """
    locations = (("subject", subject or ""), ("body", body or ""))
    matches: list[PatternMatch] = []

    for pattern in BEC_PATTERNS:
        evidence: list[str] = []
        total = 0.0
        for location, text in locations:
            if not text:
                continue
            for keyword in pattern.keywords:
                if _KEYWORD_RES[keyword].search(text):
                    evidence.append(f'"{keyword}" in {location}')
                    total += pattern.keyword_weight
            if pattern.regex is not None:
                m = pattern.regex.search(text)
                if m:
                    evidence.append(f'"{m.group(0).lower()}" in {location}')
                    total += pattern.regex_weight

        if evidence:
            matches.append(PatternMatch(pattern=pattern, evidence=evidence, score=min(total, 1.0)))

    matches.sort(key=lambda m: m.score, reverse=True)
    return matches


def extract_amounts(text: str) -> list[tuple[float, str]]:
    """Money amounts as (value, original text), in pattern order."""
    amounts: list[tuple[float, str]] = []
    seen: set[int] = set()
    for regex in AMOUNT_PATTERNS:
        for m in regex.finditer(text or ""):
            if m.start() in seen:
                continue
            numeric = re.sub(r"[^0-9.]", "", m.group(0))
            try:
                value = float(numeric)
            except ValueError:
                continue
            if value > 0:
                seen.add(m.start())
                amounts.append((value, m.group(0).strip()))
    return amounts


def assess_amount_risk(amounts: list[tuple[float, str]]) -> AmountRisk:
    if not amounts:
        return AmountRisk()
    max_amount = max(value for value, _ in amounts)
    if max_amount >= 100_000:
        level = RISK_CRITICAL
    elif max_amount >= 25_000:
        level = RISK_HIGH
    elif max_amount >= 5_000:
        level = RISK_MEDIUM
    else:
        level = RISK_LOW
    return AmountRisk(has_high_risk_amount=max_amount >= 5_000, max_amount=max_amount, risk_level=level)


def scan_financial_entities(text: str) -> list[str]:
    """Routing numbers, account numbers and bank names found in the text."""
    entities: list[str] = []
    for m in _ROUTING_RE.finditer(text or ""):
        entities.append(f"routing:{m.group(1)}")
    for m in _ACCOUNT_RE.finditer(text or ""):
        entities.append(f"account:{m.group(1)}")
    for m in _BANK_NAME_RE.finditer(text or ""):
        entities.append(f"bank:{m.group(1).strip()}")
    return entities


def detect_compound_attack(matches: list[PatternMatch]) -> CompoundAttack:
    """Classify how dangerous the combination of matched patterns is."""
    if len(matches) < 2:
        return CompoundAttack(explanation="Single pattern or no patterns detected")

    categories = {m.pattern.category for m in matches}

    for combo in CRITICAL_COMBINATIONS:
        if all(c in categories for c in combo):
            return CompoundAttack(
                is_compound_attack=True,
                severity=RISK_CRITICAL,
                explanation=f"Critical combination detected: {' + '.join(combo)}",
            )

    if categories & FINANCIAL_CATEGORIES and categories & PRESSURE_CATEGORIES:
        return CompoundAttack(
            is_compound_attack=True,
            severity=RISK_HIGH,
            explanation="Financial request combined with pressure tactics",
        )

    if len(matches) >= 3:
        return CompoundAttack(
            is_compound_attack=True,
            severity=RISK_MEDIUM,
            explanation=f"Multiple BEC indicators detected ({len(matches)} patterns)",
        )

    return CompoundAttack(
        severity=RISK_LOW,
        explanation="Patterns detected but not in high-risk combination",
    )
