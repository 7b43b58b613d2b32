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
Multi-feed threat-intelligence consensus with a per-URL TTL cache.

    consensus   reliability-weighted mean of feed scores (rounded)
    agreement   majority verdict count / responding feeds
    disagree    agreement < 0.7
    confidence  agreement x mean reliability, x1.1 (cap 1) with 3+ feeds

Thread-safe: refreshes of one URL are single-flight behind a per-URL lock;
the cache itself is guarded by one short-held lock.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from detection.models import SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_WARNING, Signal, round_half_up
from detection.threat_intel.feeds import ThreatFeed, VERDICT_CLEAN, VERDICT_MALICIOUS, VERDICT_SUSPICIOUS

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_MS = 5 * 60 * 1000
DEFAULT_FEED_TIMEOUT = 5.0

FEED_RELIABILITY = {
    "virustotal": 0.95,
    "urlhaus": 0.85,
    "phishtank": 0.80,
    "openphish": 0.75,
}
DEFAULT_RELIABILITY = 0.5

DISAGREEMENT_RATIO = 0.7
MULTI_SOURCE_MIN = 3
MULTI_SOURCE_BOOST = 1.1


@dataclass(frozen=True)
class ThreatIntelSource:
    feed: str
    verdict: str
    score: float
    reliability: float
    category: str = ""
    malware_family: str = ""
    tags: tuple = ()


@dataclass(frozen=True)
class ThreatIntelResult:
    url: str
    consensus_score: int
    confidence: float
    agreement_ratio: float
    sources: tuple = ()
    disagreement: bool = False
    from_cache: bool = False
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _CacheEntry:
    result: ThreatIntelResult
    expires_at: float


# ---------------------------------------------------------------------------
# Consensus math
# ---------------------------------------------------------------------------

def weighted_consensus(sources) -> int:
    total_weight = sum(s.reliability for s in sources)
    if not sources or total_weight <= 0:
        return 0
    return round_half_up(sum(s.score * s.reliability for s in sources) / total_weight)


def agreement(sources) -> tuple[float, bool]:
    """Return (agreement ratio, disagreement flag)."""
    if not sources:
        return 0.0, False
    if len(sources) == 1:
        return 1.0, False
    counts = {
        verdict: sum(1 for s in sources if s.verdict == verdict)
        for verdict in (VERDICT_MALICIOUS, VERDICT_CLEAN, VERDICT_SUSPICIOUS)
    }
    ratio = max(counts.values()) / len(sources)
    return ratio, ratio < DISAGREEMENT_RATIO


def consensus_confidence(sources, agreement_ratio: float) -> float:
    if not sources:
        return 0.0
    mean_reliability = sum(s.reliability for s in sources) / len(sources)
    confidence = agreement_ratio * mean_reliability
    if len(sources) >= MULTI_SOURCE_MIN:
        confidence = min(1.0, confidence * MULTI_SOURCE_BOOST)
    return round_half_up(confidence * 100) / 100


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

class ThreatIntelAggregator:
    """Query several feeds for a URL and combine their verdicts.

    Usage:
        aggregator = ThreatIntelAggregator(build_feeds(get_threat_feeds()))
        result = aggregator.aggregate("https://example.com/login")
    """

    def __init__(
        self,
        feeds: dict[str, ThreatFeed],
        feed_timeout: float = DEFAULT_FEED_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._feeds = dict(feeds)
        self._feed_timeout = feed_timeout
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._cache_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

    @property
    def feed_names(self) -> list[str]:
        return list(self._feeds)

    def _get_lock(self, url: str) -> threading.Lock:
        """Get or create a per-URL lock."""
        lock = self._locks.get(url)
        if lock is None:
            with self._global_lock:
                lock = self._locks.setdefault(url, threading.Lock())
        return lock

    def _cached(self, url: str) -> Optional[ThreatIntelResult]:
        now = self._clock()
        with self._cache_lock:
            entry = self._cache.get(url)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._cache[url]
                return None
            return replace(entry.result, from_cache=True)

    def _store(self, url: str, result: ThreatIntelResult, ttl_ms: float) -> None:
        now = self._clock()
        with self._cache_lock:
            expired = [u for u, e in self._cache.items() if e.expires_at <= now]
            for u in expired:
                del self._cache[u]
            self._cache[url] = _CacheEntry(result=result, expires_at=now + ttl_ms / 1000.0)
        self._drop_locks(u for u in expired if u != url)

    def _drop_locks(self, urls: Optional[Iterable[str]]) -> None:
        """Forget the per-URL locks of evicted entries that nobody holds (all URLs when None)."""
        with self._global_lock:
            for u in list(self._locks) if urls is None else list(urls):
                lock = self._locks.get(u)
                if lock is not None and not lock.locked():
                    del self._locks[u]

    def clear_cache(self, url: Optional[str] = None) -> None:
        """Invalidate one URL, or the whole cache when ``url`` is None."""
        with self._cache_lock:
            if url is None:
                self._cache.clear()
            else:
                self._cache.pop(url, None)
        self._drop_locks(None if url is None else [url])

    def aggregate(
        self,
        url: str,
        feeds: Optional[list[str]] = None,
        cache_ttl_ms: float = DEFAULT_CACHE_TTL_MS,
        force_refresh: bool = False,
    ) -> ThreatIntelResult:
        """Consensus verdict for one URL, served from cache when fresh."""
        if not force_refresh:
            cached = self._cached(url)
            if cached is not None:
                return cached

        with self._get_lock(url):
            # Another thread may have refreshed while we waited
            if not force_refresh:
                cached = self._cached(url)
                if cached is not None:
                    return cached

            sources = self._query_feeds(url, feeds)
            ratio, disagreement = agreement(sources)
            result = ThreatIntelResult(
                url=url,
                consensus_score=weighted_consensus(sources),
                confidence=consensus_confidence(sources, ratio),
                agreement_ratio=ratio,
                sources=tuple(sources),
                disagreement=disagreement,
            )
            self._store(url, result, cache_ttl_ms)

        logger.debug(
            "Threat intel for %s: score=%d sources=%d agreement=%.2f",
            url, result.consensus_score, len(result.sources), result.agreement_ratio,
        )
        return result

    def _query_feeds(self, url: str, names: Optional[list[str]]) -> list[ThreatIntelSource]:
        selected: list[tuple[str, ThreatFeed]] = []
        for name in names if names is not None else self.feed_names:
            feed = self._feeds.get(name)
            if feed is None:
                logger.warning("Unknown threat feed requested: %s", name)
                continue
            selected.append((name, feed))
        if not selected:
            return []

        sources: list[ThreatIntelSource] = []
        executor = ThreadPoolExecutor(max_workers=len(selected), thread_name_prefix="threat-feed")
        try:
            submitted = [
                (name, executor.submit(feed.query, url, self._feed_timeout))
                for name, feed in selected
            ]
            done, _ = wait([f for _, f in submitted], timeout=self._feed_timeout)

            # Keep the configured feed order so results are deterministic
            for name, future in submitted:
                if future not in done:
                    logger.warning("Threat feed %s timed out for %s", name, url)
                    continue
                try:
                    response = future.result()
                except Exception as exc:
                    logger.warning("Threat feed %s failed for %s: %s", name, url, exc)
                    continue
                reliability = response.reliability
                if reliability is None:
                    reliability = FEED_RELIABILITY.get(name, DEFAULT_RELIABILITY)
                sources.append(ThreatIntelSource(
                    feed=name,
                    verdict=response.verdict,
                    score=max(0, min(100, response.score)),
                    reliability=reliability,
                    category=response.category,
                    malware_family=response.malware_family,
                    tags=tuple(response.tags),
                ))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return sources


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

def threat_intel_to_signals(result: ThreatIntelResult) -> list[Signal]:
    """Convert a consensus result into detection signals."""
    signals: list[Signal] = []

    if result.consensus_score > 0:
        if result.consensus_score >= 80:
            severity = SEVERITY_CRITICAL
        elif result.consensus_score >= 50:
            severity = SEVERITY_WARNING
        else:
            severity = SEVERITY_INFO
        signals.append(Signal(
            type="threat_intel_consensus",
            severity=severity,
            score=round_half_up(result.consensus_score * 0.4),
            detail=f"Threat intel consensus: {result.consensus_score}/100 ({len(result.sources)} sources)",
            metadata={
                "url": result.url,
                "consensus_score": result.consensus_score,
                "agreement_ratio": result.agreement_ratio,
                "confidence": result.confidence,
            },
        ))

    for source in result.sources:
        if source.malware_family:
            signals.append(Signal(
                type="malware_family_detected",
                severity=SEVERITY_CRITICAL,
                score=35,
                detail=f"Malware family detected: {source.malware_family} ({source.feed})",
                metadata={"feed": source.feed, "malware_family": source.malware_family},
            ))
        if source.tags:
            signals.append(Signal(
                type="threat_tags",
                severity=SEVERITY_WARNING,
                score=20,
                detail=f"Threat tags: {', '.join(source.tags)} ({source.feed})",
                metadata={"feed": source.feed, "tags": list(source.tags)},
            ))
        if source.verdict == VERDICT_MALICIOUS and source.reliability >= 0.8 and source.score >= 80:
            signals.append(Signal(
                type="high_confidence_threat",
                severity=SEVERITY_CRITICAL,
                score=30,
                detail=f"High-confidence malicious verdict from {source.feed} ({source.score:.0f}/100)",
                metadata={"feed": source.feed, "reliability": source.reliability},
            ))

    if result.disagreement:
        signals.append(Signal(
            type="threat_intel_disagreement",
            severity=SEVERITY_INFO,
            score=5,
            detail=f"Threat feeds disagree (agreement: {round_half_up(result.agreement_ratio * 100)}%)",
            metadata={"agreement_ratio": result.agreement_ratio},
        ))

    return signals
