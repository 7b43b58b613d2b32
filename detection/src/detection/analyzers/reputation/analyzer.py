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
Analyzer: Enhanced Reputation

Combines three views of the sender:

  1. the known sender registry: category and trust score, which becomes a
     trust modifier the pipeline applies to the final score
         trust >= 90 -> x0.3,  >= 80 -> x0.5,  >= 70 -> x0.7,  else x1.0
  2. DNS blocklists for the sender / reply-to domains and addresses, the
     originating IP and every URL (DnsblReputationSource)
  3. multi-feed threat-intel consensus for URLs (ThreatIntelAggregator)

Lookups fan out on a thread pool and are joined before the layer returns.
Tracking URLs of a known sender are never scored.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Optional
from urllib.parse import urlparse

from detection.analyzers._base import BaseAnalyzer
from detection.analyzers.reputation.dnsbl import (
    CATEGORY_MALICIOUS,
    CATEGORY_SUSPICIOUS,
    DnsblReputationSource,
    EntityReputation,
    extract_sender_ip,
)
from detection.classifier import (
    CATEGORY_MARKETING,
    CATEGORY_TRANSACTIONAL,
    CATEGORY_TRUSTED,
    SenderRegistry,
)
from detection.models import (
    LAYER_REPUTATION,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    EmailEvent,
    LayerResult,
    ReputationContext,
    Signal,
)
from detection.text import domain_matches, domain_of, extract_urls
from detection.threat_intel import ThreatIntelAggregator, ThreatIntelResult, threat_intel_to_signals

logger = logging.getLogger(__name__)

CONFIDENCE = 0.85
DEFAULT_LOOKUP_TIMEOUT = 5.0
MAX_URLS = 10

TRUST_TIERS = ((90, 0.3), (80, 0.5), (70, 0.7))
TRUSTED_CATEGORIES = frozenset({CATEGORY_TRUSTED, CATEGORY_MARKETING, CATEGORY_TRANSACTIONAL})

# Consensus score -> URL category
THREAT_INTEL_MALICIOUS = 80
THREAT_INTEL_SUSPICIOUS = 50

# (signal type, severity, score) per entity kind and category
_SIGNALS = {
    ("url", CATEGORY_MALICIOUS): ("malicious_url", SEVERITY_CRITICAL, 40),
    ("url", CATEGORY_SUSPICIOUS): ("suspicious_url", SEVERITY_WARNING, 15),
    ("domain", CATEGORY_MALICIOUS): ("malicious_domain", SEVERITY_CRITICAL, 35),
    ("domain", CATEGORY_SUSPICIOUS): ("suspicious_domain", SEVERITY_WARNING, 20),
    ("ip", CATEGORY_MALICIOUS): ("malicious_ip", SEVERITY_CRITICAL, 35),
    ("ip", CATEGORY_SUSPICIOUS): ("suspicious_ip", SEVERITY_WARNING, 20),
    ("email", CATEGORY_MALICIOUS): ("malicious_sender", SEVERITY_CRITICAL, 40),
    ("email", CATEGORY_SUSPICIOUS): ("suspicious_sender", SEVERITY_WARNING, 25),
}
_LABELS = {"url": "URL", "domain": "domain", "ip": "sender IP", "email": "sender address"}


def trust_modifier(trust_score: int) -> float:
    for minimum, modifier in TRUST_TIERS:
        if trust_score >= minimum:
            return modifier
    return 1.0


def _worst(*reputations: EntityReputation) -> str:
    categories = {r.category for r in reputations}
    if CATEGORY_MALICIOUS in categories:
        return CATEGORY_MALICIOUS
    if CATEGORY_SUSPICIOUS in categories:
        return CATEGORY_SUSPICIOUS
    return ""


def _threat_intel_category(result: Optional[ThreatIntelResult]) -> EntityReputation:
    if result is None or not result.sources:
        return EntityReputation()
    if result.consensus_score >= THREAT_INTEL_MALICIOUS:
        return EntityReputation(score=0, category=CATEGORY_MALICIOUS, sources=["threat_intel"])
    if result.consensus_score >= THREAT_INTEL_SUSPICIOUS:
        return EntityReputation(score=35, category=CATEGORY_SUSPICIOUS, sources=["threat_intel"])
    return EntityReputation()


class EnhancedReputationAnalyzer(BaseAnalyzer):
    """Sender trust, blocklist and threat-intel reputation in one layer."""

    layer = LAYER_REPUTATION
    description = "Known-sender trust, DNSBL and threat-intel consensus lookups"

    def __init__(
        self,
        registry: Optional[SenderRegistry] = None,
        source: Optional[DnsblReputationSource] = None,
        threat_intel: Optional[ThreatIntelAggregator] = None,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
        max_workers: int = 8,
    ):
        self.registry = registry or SenderRegistry()
        self.source = source
        self.threat_intel = threat_intel
        self.lookup_timeout = lookup_timeout
        self.max_workers = max_workers

    def analyze(self, email: EmailEvent, prior_signals: Optional[list[Signal]] = None) -> LayerResult:
        result, _context = self.analyze_with_context(email, prior_signals)
        return result

    def analyze_with_context(
        self,
        email: EmailEvent,
        prior_signals: Optional[list[Signal]] = None,
    ) -> tuple[LayerResult, ReputationContext]:
        signals: list[Signal] = []
        sender_domain = email.sender_domain
        info = self.registry.lookup(sender_domain)

        context = ReputationContext()
        if info is not None:
            context = ReputationContext(
                trust_modifier=trust_modifier(info.trust_score),
                known_tracking_domains=list(info.tracking_domains),
                is_known_sender=True,
                is_trusted_category=info.category in TRUSTED_CATEGORIES,
                sender_name=info.name,
                sender_category=info.category,
                reply_to_domains=[info.domain] + list(info.reply_to_domains),
            )
            signals.append(Signal(
                "sender_reputation", SEVERITY_INFO, 0,
                f"Known sender: {info.name} ({info.category}, trust: {info.trust_score}/100)",
                metadata={
                    "trust_score": info.trust_score,
                    "category": info.category,
                    "trust_modifier": context.trust_modifier,
                    "score_reduction": f"{round((1 - context.trust_modifier) * 100)}%",
                },
            ))

        # --- Collect entities ---
        domains: list[str] = [sender_domain] if sender_domain else []
        emails: list[str] = [email.sender.lower()] if email.sender else []
        reply_domain = domain_of(email.reply_to)
        if reply_domain and reply_domain != sender_domain:
            domains.append(reply_domain)
            emails.append(email.reply_to.lower())
        sender_ip = extract_sender_ip(email.headers)
        ips = [sender_ip] if sender_ip else []

        urls: list[str] = []
        for url in extract_urls(email.body.text, email.body.html):
            try:
                host = (urlparse(url).hostname or "").lower()
            except ValueError:
                host = ""
            if info is not None and host and domain_matches(host, context.known_tracking_domains):
                signals.append(Signal(
                    "url_reputation", SEVERITY_INFO, 0,
                    f"Known tracking URL for {info.name} (whitelisted)",
                    metadata={"url": url, "whitelisted": True},
                ))
                continue
            urls.append(url)
        urls = urls[:MAX_URLS]

        # --- Fan out ---
        reputations, intel = self._lookup_all(domains, ips, urls, emails)

        for url in urls:
            category = _worst(reputations.get(url, EntityReputation()), _threat_intel_category(intel.get(url)))
            signals.extend(self._entity_signal("url", url, category))
            if url in intel:
                signals.extend(threat_intel_to_signals(intel[url]))
        for domain in domains:
            signals.extend(self._entity_signal("domain", domain, _worst(reputations.get(domain, EntityReputation()))))
        for ip in ips:
            signals.extend(self._entity_signal("ip", ip, _worst(reputations.get(ip, EntityReputation()))))
        for address in emails:
            signals.extend(self._entity_signal("email", address, _worst(reputations.get(address, EntityReputation()))))

        result = self.result(
            signals,
            confidence=CONFIDENCE,
            trust_modifier=context.trust_modifier,
            entities_checked=len(domains) + len(ips) + len(urls) + len(emails),
        )
        return result, context

    def _lookup_all(self, domains, ips, urls, emails) -> tuple[dict, dict]:
        reputations: dict[str, EntityReputation] = {}
        intel: dict[str, ThreatIntelResult] = {}

        jobs = []
        if self.source is not None:
            jobs += [("domains", d) for d in domains]
            jobs += [("ips", ip) for ip in ips]
            jobs += [("urls", u) for u in urls]
            jobs += [("emails", e) for e in emails]
        intel_jobs = list(urls) if self.threat_intel is not None else []
        if not jobs and not intel_jobs:
            return reputations, intel

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reputation")
        try:
            submitted = [
                ("dnsbl", entity, executor.submit(self.source.lookup, **{kind: [entity]}))
                for kind, entity in jobs
            ]
            submitted += [
                ("threat_intel", url, executor.submit(self.threat_intel.aggregate, url))
                for url in intel_jobs
            ]
            done, _ = wait([f for _, _, f in submitted], timeout=self.lookup_timeout)

            for kind, entity, future in submitted:
                if future not in done:
                    logger.warning("Reputation %s lookup timed out for %s", kind, entity)
                    continue
                try:
                    value = future.result()
                except Exception as exc:
                    logger.warning("Reputation %s lookup failed for %s: %s", kind, entity, exc)
                    continue
                if kind == "dnsbl":
                    reputations.update(value)
                else:
                    intel[entity] = value
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return reputations, intel

    @staticmethod
    def _entity_signal(kind: str, entity: str, category: str) -> list[Signal]:
        rule = _SIGNALS.get((kind, category))
        if rule is None:
            return []
        signal_type, severity, score = rule
        prefix = "Malicious" if category == CATEGORY_MALICIOUS else "Suspicious"
        return [Signal(
            signal_type, severity, score,
            f"{prefix} {_LABELS[kind]}: {entity}",
            metadata={kind: entity, "category": category},
        )]
