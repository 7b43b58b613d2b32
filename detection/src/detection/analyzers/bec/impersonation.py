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
BEC Analyzer — Executive / VIP Impersonation

Checks, in order:
  1. display name matches a tenant VIP but the address is not theirs
  2. executive title in the display name ("Jane Doe, CEO")
  3. a VIP name or an executive title on a free email domain
  4. Reply-To pointing at a different domain
  5. sender domain a near-copy of the organisation's own domain
  6. non-ASCII lookalike characters in the display name or address
"""
import re
from typing import Optional

from detection.analyzers.bec.models import (
    RISK_CRITICAL,
    RISK_HIGH,
    RISK_MEDIUM,
    ImpersonationResult,
    ImpersonationSignal,
    VIPEntry,
)
from detection.lookalike.brands import HOMOGLYPHS
from detection.lookalike.similarity import levenshtein
from detection.text import domain_of

FREE_EMAIL_DOMAINS = frozenset({
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com",
    "aol.com", "icloud.com", "protonmail.com", "mail.com",
    "zoho.com", "yandex.com", "gmx.com", "live.com",
})

EXECUTIVE_TITLE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(?:ceo|chief executive)\b",
    r"\b(?:cfo|chief financial)\b",
    r"\b(?:coo|chief operating)\b",
    r"\b(?:cto|chief technology)\b",
    r"\b(?:cio|chief information)\b",
    r"\b(?:president|vice president|vp)\b",
    r"\b(?:director|managing director)\b",
    r"\b(?:chairman|chairwoman|chair)\b",
    r"\b(?:founder|co-founder)\b",
    r"\b(?:owner|partner)\b",
)]

# Digit / letter swaps seen in cousin domains
_SUBSTITUTIONS = (
    ("o", "0"), ("l", "1"), ("i", "1"), ("s", "5"),
    ("a", "4"), ("e", "3"), ("rn", "m"), ("vv", "w"),
)

_NON_ASCII = re.compile(r"[^\x00-\x7f]")

# Non-ASCII character -> the ASCII letter it imitates
_UNICODE_HOMOGLYPHS: dict[str, str] = {
    glyph: ascii_char
    for ascii_char, glyphs in HOMOGLYPHS.items()
    for glyph in glyphs
    if not glyph.isascii()
}


def executive_title(display_name: str) -> Optional[str]:
    """The executive title found in a display name, as written."""
    for pattern in EXECUTIVE_TITLE_PATTERNS:
        m = pattern.search(display_name or "")
        if m:
            return m.group(0)
    return None


def match_vip(display_name: str, vips: list[VIPEntry]) -> Optional[VIPEntry]:
    """First VIP whose name or alias equals / is contained in the display name."""
    name = (display_name or "").strip().lower()
    if not name:
        return None
    for vip in vips:
        for candidate in vip.names:
            if candidate == name or (len(candidate) >= 5 and candidate in name):
                return vip
    return None


def _domain_lookalike(sender_domain: str, org_domain: str) -> Optional[tuple[float, str]]:
    sender_base = sender_domain.split(".")[0]
    org_base = org_domain.split(".")[0]

    if sender_base == org_base and sender_domain != org_domain:
        return 0.85, f'Lookalike domain: "{sender_domain}" mimics "{org_domain}" with different TLD'

    distance = levenshtein(sender_base, org_base)
    if 0 < distance <= 2 and len(sender_base) >= 4:
        return (
            0.9 if distance == 1 else 0.7,
            f'Lookalike domain: "{sender_domain}" is {distance} character(s) different from "{org_domain}"',
        )

    for original, swapped in _SUBSTITUTIONS:
        if sender_base == org_base.replace(original, swapped) and sender_base != org_base:
            return 0.85, f'Lookalike domain: "{sender_domain}" uses character substitution ({original}->{swapped})'

    return None


def _unicode_spoof(display_name: str, address: str) -> Optional[str]:
    text = f"{display_name} {address}"
    non_ascii = _NON_ASCII.findall(text)
    if not non_ascii:
        return None
    for char in non_ascii:
        if char in _UNICODE_HOMOGLYPHS:
            return f'Unicode homoglyph detected: "{char}" looks like "{_UNICODE_HOMOGLYPHS[char]}"'
    if _NON_ASCII.search(address):
        return "Non-ASCII characters in email address (possible homoglyph attack)"
    return None


def detect_impersonation(
    sender: str,
    display_name: str,
    reply_to: str = "",
    vips: Optional[list[VIPEntry]] = None,
    organization_domains: Optional[list[str]] = None,
) -> ImpersonationResult:
    """Look for executive / VIP impersonation in the sender identity.

    ``organization_domains`` are the tenant's own domains (usually the
    recipients' domains); a sender domain that is a near-copy of one of
    them is a cousin-domain attack.
    """
    vips = vips or []
    sender = (sender or "").strip().lower()
    display_name = display_name or ""
    sender_domain = domain_of(sender)

    signals: list[ImpersonationSignal] = []
    confidence = 0.0
    impersonation_type: Optional[str] = None
    matched_vip: Optional[VIPEntry] = None

    def add(kind: str, severity: str, detail: str, kind_confidence: float, **metadata):
        nonlocal confidence, impersonation_type
        if impersonation_type is None:
            impersonation_type = kind
        confidence = max(confidence, kind_confidence)
        signals.append(ImpersonationSignal(kind, severity, detail, metadata))

    # 1. VIP display name from an address the VIP does not use
    vip = match_vip(display_name, vips)
    if vip is not None and sender != vip.email:
        matched_vip = vip
        add(
            "display_name_spoof", RISK_CRITICAL,
            f"Display name matches VIP {vip.display_name} but sent from {sender}",
            0.9,
        )

    # 2. Executive title in the display name
    title = executive_title(display_name)
    if title:
        add("title_spoof", RISK_HIGH, f"Executive title in display name: {title}", 0.6)

    # 3. Executive identity on free mail
    if sender_domain in FREE_EMAIL_DOMAINS:
        if vip is not None:
            add(
                "free_email_executive", RISK_HIGH,
                f'Executive name "{display_name}" used with free email domain "{sender_domain}"',
                0.7,
            )
        if title:
            add(
                "free_email_executive", RISK_CRITICAL,
                f'Executive title "{title}" with free email is highly suspicious',
                0.75,
            )

    # 4. Reply-To divergence
    reply_to = (reply_to or "").strip().lower()
    if reply_to and reply_to != sender:
        reply_domain = domain_of(reply_to)
        if reply_domain and reply_domain != sender_domain:
            add(
                "reply_to_mismatch",
                RISK_HIGH if reply_domain in FREE_EMAIL_DOMAINS else RISK_MEDIUM,
                f'Reply-To "{reply_to}" differs from sender "{sender}"',
                0.5,
                reply_to_domain=reply_domain,
            )

    # 5. Cousin of the organisation's own domain
    for org_domain in organization_domains or []:
        org_domain = org_domain.lower()
        if not org_domain or org_domain == sender_domain or not sender_domain:
            continue
        lookalike = _domain_lookalike(sender_domain, org_domain)
        if lookalike is not None:
            add("cousin_domain", RISK_CRITICAL, lookalike[1], lookalike[0])
            break

    # 6. Unicode homoglyphs
    unicode_detail = _unicode_spoof(display_name, sender)
    if unicode_detail:
        add("unicode_spoof", RISK_CRITICAL, unicode_detail, 0.9)

    if not signals:
        explanation = "No impersonation indicators detected"
    elif len(signals) == 1:
        explanation = signals[0].detail
    else:
        explanation = "Multiple impersonation indicators: " + ", ".join(s.type for s in signals)

    return ImpersonationResult(
        is_impersonation=confidence > 0.5,
        impersonation_type=impersonation_type,
        confidence=confidence,
        matched_vip=matched_vip,
        signals=signals,
        explanation=explanation,
    )
