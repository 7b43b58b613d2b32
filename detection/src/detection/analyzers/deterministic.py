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
Analyzer: Deterministic Rules

Fast, rule-based checks that need no external API. Runs first, and is the
only layer ``quick_check`` uses.

What it checks:
- SPF / DKIM / DMARC results from Authentication-Results / Received-SPF
- Return-Path and Reply-To domains that differ from the From domain
- Very new sender domains (age supplied upstream)
- Free-mail and disposable senders, display-name spoofing
- Urgency, financial and credential-request wording
- URLs: raw IPs, abused TLDs, shorteners, deep subdomains, malformed URLs
- Lookalike domains for the sender, the Reply-To and every URL host
"""
import ipaddress
import logging
import re
from typing import Optional
from urllib.parse import urlparse

from detection.analyzers._base import BaseAnalyzer
from detection.lookalike import PROTECTED_BRANDS, LookalikeLearningService, LookalikeResult
from detection.models import (
    LAYER_DETERMINISTIC,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    EmailEvent,
    LayerResult,
    Signal,
)
from detection.text import domain_of, extract_urls, root_domain

logger = logging.getLogger(__name__)

CONFIDENCE = 0.9
MAX_URLS = 25
NEW_DOMAIN_DAYS = 30

FREE_EMAIL_PROVIDERS = frozenset({
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com",
    "icloud.com", "mail.com", "protonmail.com", "proton.me", "zoho.com",
    "yandex.com", "gmx.com", "live.com", "msn.com", "fastmail.com",
})

DISPOSABLE_DOMAINS = frozenset({
    "tempmail.com", "guerrillamail.com", "mailinator.com", "10minutemail.com",
    "throwaway.email", "temp-mail.org", "fakeinbox.com", "trashmail.com",
})

# Commonly abused TLDs in phishing campaigns
SUSPICIOUS_TLDS = (
    ".xyz", ".top", ".club", ".work", ".click", ".loan",
    ".gq", ".ml", ".cf", ".tk", ".ga", ".buzz", ".surf",
)

SHORTENERS = frozenset({
    "bit.ly", "tinyurl.com", "t.co", "goo.gl", "ow.ly",
    "is.gd", "buff.ly", "rebrand.ly", "cutt.ly",
})

AUTHORITY_TERMS = ("ceo", "cfo", "president", "director", "manager", "admin", "support")

URGENCY_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\burgent", r"\bimmediate(ly)?\b", r"\basap\b", r"right away", r"act now",
    r"expires? (today|soon|immediately)", r"limited time", r"don'?t delay",
    r"account (will be |has been )?(suspended|closed|terminated|locked)",
    r"unauthori[sz]ed (access|activity|transaction)",
    r"suspicious (activity|login|transaction)",
)]

FINANCIAL_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"wire transfer", r"bank transfer", r"payment request",
    r"invoice attached", r"pay(ment)? immediately",
    r"update (your )?(payment|billing|bank)",
    r"gift card", r"bitcoin", r"cryptocurrency",
)]

CREDENTIAL_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"(enter|verify|confirm) (your )?(password|credentials|login)",
    r"verify (your )?(account|identity)",
    r"reset (your )?password",
    r"click (here |the link )?(to )?(log ?in|sign in|verify)",
    r"social security number|\bssn\b",
)]

# Lookalike signal scoring: base score and severity per attack type
_LOOKALIKE_BASE = {
    "homoglyph": (35, SEVERITY_CRITICAL),
    "typosquat": (25, SEVERITY_WARNING),
    "cousin": (20, SEVERITY_WARNING),
}
_SENDER_LOOKALIKE_TYPES = {
    "homoglyph": "homoglyph",
    "typosquat": "typosquat",
    "cousin": "cousin_domain",
}
LOOKALIKE_SCORE_CAP = 50


def _header(headers: dict, name: str) -> str:
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return str(value)
    return ""


def lookalike_signal(result: LookalikeResult, domain: str, source: str) -> Optional[Signal]:
    """Turn a lookalike detection into a signal; ``source`` is sender, reply_to or url."""
    if not result.is_lookalike or result.attack_type not in _LOOKALIKE_BASE:
        return None
    base_score, severity = _LOOKALIKE_BASE[result.attack_type]
    score = base_score + round(result.final_confidence * 10) + round(result.learning_boost * 20)
    score = max(0, min(LOOKALIKE_SCORE_CAP, score))

    if source == "url":
        signal_type = f"lookalike_{result.attack_type}"
    else:
        signal_type = _SENDER_LOOKALIKE_TYPES[result.attack_type]

    target = result.target_domain or result.target_brand or "a protected brand"
    return Signal(
        type=signal_type,
        severity=severity,
        score=score,
        detail=f"Domain {domain} looks like {target} ({result.attack_type}, {source})",
        metadata={
            "domain": domain,
            "source": source,
            "target_brand": result.target_brand,
            "target_domain": result.target_domain,
            "attack_type": result.attack_type,
            "confidence": round(result.final_confidence, 4),
            "learning_boost": round(result.learning_boost, 4),
        },
    )


class DeterministicAnalyzer(BaseAnalyzer):
    """Rule-based header, domain, content and URL checks."""

    layer = LAYER_DETERMINISTIC
    description = "Authentication, sender, wording, URL and lookalike rules"

    def __init__(self, lookalike: Optional[LookalikeLearningService] = None):
        self.lookalike = lookalike

    def analyze(self, email: EmailEvent, prior_signals: Optional[list[Signal]] = None) -> LayerResult:
        signals: list[Signal] = []
        signals.extend(self._check_authentication(email))
        signals.extend(self._check_sender(email))
        signals.extend(self._check_content(email))
        signals.extend(self._check_urls(email))
        signals.extend(self._check_lookalikes(email))
        return self.result(signals, confidence=CONFIDENCE)

    # --- Authentication and header checks ---

    def _check_authentication(self, email: EmailEvent) -> list[Signal]:
        signals = []
        auth_results = _header(email.headers, "Authentication-Results").lower()
        spf_header = _header(email.headers, "Received-SPF").lower()

        if "spf=fail" in auth_results or spf_header.startswith("fail"):
            signals.append(Signal("spf", SEVERITY_WARNING, 20, "SPF authentication failed, sender may be spoofed"))
        elif "spf=softfail" in auth_results or spf_header.startswith("softfail"):
            signals.append(Signal("spf", SEVERITY_WARNING, 10, "SPF soft fail, sender authenticity uncertain"))
        elif "spf=pass" in auth_results or spf_header.startswith("pass"):
            signals.append(Signal("spf", SEVERITY_INFO, 0, "SPF authentication passed"))

        if "dkim=fail" in auth_results:
            signals.append(Signal("dkim", SEVERITY_WARNING, 15, "DKIM signature verification failed"))
        elif "dkim=pass" in auth_results:
            signals.append(Signal("dkim", SEVERITY_INFO, 0, "DKIM signature verified"))

        if "dmarc=fail" in auth_results:
            signals.append(Signal("dmarc", SEVERITY_CRITICAL, 30, "DMARC policy check failed, likely spoofed"))
        elif "dmarc=pass" in auth_results:
            signals.append(Signal("dmarc", SEVERITY_INFO, 0, "DMARC policy check passed"))

        sender_domain = email.sender_domain
        envelope_domain = domain_of(_header(email.headers, "Return-Path"))
        if envelope_domain and sender_domain and root_domain(envelope_domain) != root_domain(sender_domain):
            signals.append(Signal(
                "return_path_mismatch", SEVERITY_WARNING, 10,
                f"Envelope sender domain ({envelope_domain}) doesn't match header sender domain ({sender_domain})",
                metadata={"return_path_domain": envelope_domain},
            ))

        reply_domain = domain_of(email.reply_to)
        if reply_domain and sender_domain and reply_domain != sender_domain:
            signals.append(Signal(
                "reply_to_mismatch", SEVERITY_WARNING, 15,
                f"Reply-To domain ({reply_domain}) differs from From domain ({sender_domain})",
                metadata={"reply_to_domain": reply_domain},
            ))

        if email.headers and not _header(email.headers, "Message-ID"):
            signals.append(Signal("header_anomaly", SEVERITY_WARNING, 10, "Missing Message-ID header"))

        return signals

    # --- Sender checks ---

    def _check_sender(self, email: EmailEvent) -> list[Signal]:
        signals = []
        domain = email.sender_domain
        if not domain:
            return signals

        if domain in FREE_EMAIL_PROVIDERS:
            signals.append(Signal(
                "free_email_provider", SEVERITY_INFO, 5,
                f"Sender using free email provider: {domain}",
            ))
        if domain in DISPOSABLE_DOMAINS:
            signals.append(Signal(
                "disposable_email", SEVERITY_WARNING, 25,
                f"Sender using disposable email service: {domain}",
            ))

        age = email.sender_domain_age_days
        if age is not None and age < NEW_DOMAIN_DAYS:
            signals.append(Signal(
                "domain_age", SEVERITY_WARNING, 15,
                f"Sender domain {domain} was registered {age} day(s) ago",
                metadata={"age_days": age},
            ))

        spoofed = self._display_name_spoof(email.sender_name, domain)
        if spoofed:
            signals.append(Signal(
                "display_name_spoof", SEVERITY_WARNING, 25,
                f'Display name "{email.sender_name}" may impersonate {spoofed} but sent from {domain}',
                metadata={"impersonated": spoofed},
            ))
        return signals

    @staticmethod
    def _display_name_spoof(display_name: str, domain: str) -> Optional[str]:
        name = (display_name or "").lower()
        if not name:
            return None
        for brand in PROTECTED_BRANDS:
            brand_name = brand.name.lower()
            if len(brand_name) < 4 or not re.search(rf"\b{re.escape(brand_name)}\b", name):
                continue
            if brand.base not in domain:
                return brand.name
        if domain in FREE_EMAIL_PROVIDERS and any(re.search(rf"\b{t}\b", name) for t in AUTHORITY_TERMS):
            return "an authority figure"
        return None

    # --- Content checks ---

    def _check_content(self, email: EmailEvent) -> list[Signal]:
        signals = []
        text = f"{email.subject} {email.plain_body}"

        urgency_hits = sum(1 for p in URGENCY_PATTERNS if p.search(text))
        if urgency_hits >= 2:
            signals.append(Signal(
                "urgency_language", SEVERITY_WARNING, 15,
                f"Multiple urgency indicators detected ({urgency_hits} patterns)",
            ))
        if any(p.search(text) for p in FINANCIAL_PATTERNS):
            signals.append(Signal(
                "financial_request", SEVERITY_CRITICAL, 35,
                "Email contains financial request language",
            ))
        if any(p.search(text) for p in CREDENTIAL_PATTERNS):
            signals.append(Signal(
                "credential_request", SEVERITY_CRITICAL, 40,
                "Email requests credentials or sensitive information",
            ))
        return signals

    # --- URL checks ---

    def _check_urls(self, email: EmailEvent) -> list[Signal]:
        signals = []
        for url in extract_urls(email.body.text, email.body.html)[:MAX_URLS]:
            try:
                hostname = (urlparse(url).hostname or "").lower()
            except ValueError:
                hostname = ""
            if not hostname:
                signals.append(Signal(
                    "suspicious_url", SEVERITY_WARNING, 20,
                    f"Malformed URL: {url[:80]}",
                    metadata={"url": url, "reason": "malformed"},
                ))
                continue

            meta = {"url": url, "host": hostname}
            if self._is_ip(hostname):
                signals.append(Signal(
                    "suspicious_url", SEVERITY_WARNING, 30,
                    f"URL uses raw IP address: {url[:80]}",
                    metadata={**meta, "reason": "ip_address"},
                ))
            tld = next((t for t in SUSPICIOUS_TLDS if hostname.endswith(t)), None)
            if tld:
                signals.append(Signal(
                    "suspicious_url", SEVERITY_WARNING, 15,
                    f"URL uses suspicious TLD ({tld}): {url[:80]}",
                    metadata={**meta, "reason": "suspicious_tld"},
                ))
            if hostname in SHORTENERS:
                signals.append(Signal(
                    "url_shortener", SEVERITY_INFO, 10,
                    f"URL shortener detected: {url[:80]}",
                    metadata=meta,
                ))
            if len(hostname.split(".")) > 4:
                signals.append(Signal(
                    "suspicious_url", SEVERITY_WARNING, 15,
                    f"URL has many subdomains (possible phishing): {url[:80]}",
                    metadata={**meta, "reason": "deep_subdomain"},
                ))
        return signals

    @staticmethod
    def _is_ip(hostname: str) -> bool:
        try:
            ipaddress.ip_address(hostname)
        except ValueError:
            return False
        return True

    # --- Lookalike checks ---

    def _check_lookalikes(self, email: EmailEvent) -> list[Signal]:
        if self.lookalike is None:
            return []

        candidates: list[tuple[str, str]] = []
        if email.sender_domain:
            candidates.append((email.sender_domain, "sender"))
        reply_domain = domain_of(email.reply_to)
        if reply_domain and reply_domain != email.sender_domain:
            candidates.append((reply_domain, "reply_to"))
        for url in extract_urls(email.body.text, email.body.html)[:MAX_URLS]:
            try:
                host = (urlparse(url).hostname or "").lower()
            except ValueError:
                continue
            if host and not self._is_ip(host):
                candidates.append((root_domain(host), "url"))

        signals = []
        seen: set[str] = set()
        for domain, source in candidates:
            if domain in seen:
                continue
            seen.add(domain)
            result = self.lookalike.detect(email.tenant_id or None, domain)
            signal = lookalike_signal(result, domain, source)
            if signal is not None:
                logger.info(
                    "Lookalike %s domain %s -> %s (%s, %.2f)",
                    source, domain, result.target_domain, result.attack_type, result.final_confidence,
                )
                signals.append(signal)
        return signals
