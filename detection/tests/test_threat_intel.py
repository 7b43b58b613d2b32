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

"""Tests for threat-intel feed consensus and its cache: all feeds faked."""
import time
from unittest.mock import MagicMock, patch

import pytest

from detection.threat_intel import FeedResponse, ThreatFeed, ThreatIntelAggregator, build_feeds
from detection.threat_intel.aggregator import ThreatIntelResult, ThreatIntelSource, threat_intel_to_signals
from detection.threat_intel.feeds import PhishTankFeed, URLhausFeed, VirusTotalFeed

URL = "http://evil.example/login"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _FakeFeed(ThreatFeed):
    def __init__(self, response=None, error=None, delay=0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.calls = 0

    def query(self, url, timeout):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.response


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _source(verdict="malicious", score=90, reliability=0.9, **kwargs):
    return ThreatIntelSource(feed="f", verdict=verdict, score=score, reliability=reliability, **kwargs)


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------

class TestConsensus:

    def test_weighted_disagreeing_feeds(self):
        feeds = {
            "a": _FakeFeed(FeedResponse("malicious", 90, reliability=0.9)),
            "b": _FakeFeed(FeedResponse("clean", 5, reliability=0.5)),
        }
        result = ThreatIntelAggregator(feeds).aggregate(URL)

        # (90 * 0.9 + 5 * 0.5) / 1.4 = 59.64
        assert result.consensus_score == 60
        assert result.agreement_ratio == 0.5
        assert result.disagreement
        assert result.confidence == pytest.approx(0.35)

    def test_single_feed_full_agreement(self):
        feeds = {"urlhaus": _FakeFeed(FeedResponse("malicious", 90))}
        result = ThreatIntelAggregator(feeds).aggregate(URL)
        assert result.consensus_score == 90
        assert result.agreement_ratio == 1.0
        assert not result.disagreement
        # default urlhaus reliability
        assert result.confidence == pytest.approx(0.85)

    def test_three_agreeing_feeds_boosted(self):
        feeds = {
            name: _FakeFeed(FeedResponse("malicious", 90, reliability=0.8))
            for name in ("a", "b", "c")
        }
        result = ThreatIntelAggregator(feeds).aggregate(URL)
        assert result.confidence == pytest.approx(0.88)

    def test_no_feeds(self):
        result = ThreatIntelAggregator({}).aggregate(URL)
        assert result.consensus_score == 0
        assert result.confidence == 0.0
        assert result.agreement_ratio == 0.0
        assert result.sources == ()

    def test_failing_feed_ignored(self):
        feeds = {
            "a": _FakeFeed(FeedResponse("malicious", 80, reliability=0.9)),
            "b": _FakeFeed(error=RuntimeError("HTTP 500")),
        }
        result = ThreatIntelAggregator(feeds).aggregate(URL)
        assert [s.feed for s in result.sources] == ["a"]
        assert result.consensus_score == 80

    def test_slow_feed_dropped(self):
        feeds = {
            "fast": _FakeFeed(FeedResponse("clean", 0, reliability=0.9)),
            "slow": _FakeFeed(FeedResponse("malicious", 100, reliability=0.9), delay=1.0),
        }
        result = ThreatIntelAggregator(feeds, feed_timeout=0.1).aggregate(URL)
        assert [s.feed for s in result.sources] == ["fast"]

    def test_subset_of_feeds(self):
        a = _FakeFeed(FeedResponse("clean", 0))
        b = _FakeFeed(FeedResponse("malicious", 90))
        result = ThreatIntelAggregator({"a": a, "b": b}).aggregate(URL, feeds=["b", "missing"])
        assert [s.feed for s in result.sources] == ["b"]
        assert a.calls == 0

    def test_scores_clamped(self):
        feeds = {"a": _FakeFeed(FeedResponse("malicious", 150, reliability=1.0))}
        result = ThreatIntelAggregator(feeds).aggregate(URL)
        assert result.consensus_score == 100


class TestCache:

    def test_second_lookup_served_from_cache(self):
        feed = _FakeFeed(FeedResponse("malicious", 90))
        aggregator = ThreatIntelAggregator({"a": feed}, clock=_Clock())

        first = aggregator.aggregate(URL)
        second = aggregator.aggregate(URL)

        assert feed.calls == 1
        assert not first.from_cache
        assert second.from_cache
        assert second.consensus_score == first.consensus_score

    def test_entry_expires(self):
        clock = _Clock()
        feed = _FakeFeed(FeedResponse("malicious", 90))
        aggregator = ThreatIntelAggregator({"a": feed}, clock=clock)

        aggregator.aggregate(URL, cache_ttl_ms=1000)
        clock.now += 2
        result = aggregator.aggregate(URL, cache_ttl_ms=1000)

        assert feed.calls == 2
        assert not result.from_cache

    def test_force_refresh(self):
        feed = _FakeFeed(FeedResponse("malicious", 90))
        aggregator = ThreatIntelAggregator({"a": feed}, clock=_Clock())
        aggregator.aggregate(URL)
        aggregator.aggregate(URL, force_refresh=True)
        assert feed.calls == 2

    def test_clear_cache(self):
        feed = _FakeFeed(FeedResponse("malicious", 90))
        aggregator = ThreatIntelAggregator({"a": feed}, clock=_Clock())
        aggregator.aggregate(URL)
        aggregator.aggregate("http://other.example/")
        aggregator.clear_cache(URL)
        aggregator.aggregate(URL)
        aggregator.aggregate("http://other.example/")
        assert feed.calls == 3

        aggregator.clear_cache()
        aggregator.aggregate("http://other.example/")
        assert feed.calls == 4

    def test_locks_of_expired_entries_released(self):
        clock = _Clock()
        aggregator = ThreatIntelAggregator({"a": _FakeFeed(FeedResponse("clean", 0))}, clock=clock)

        aggregator.aggregate(URL, cache_ttl_ms=1000)
        clock.now += 2
        aggregator.aggregate("http://other.example/", cache_ttl_ms=1000)

        assert set(aggregator._locks) == {"http://other.example/"}

    def test_clear_cache_releases_locks(self):
        aggregator = ThreatIntelAggregator({"a": _FakeFeed(FeedResponse("clean", 0))}, clock=_Clock())
        aggregator.aggregate(URL)
        aggregator.aggregate("http://other.example/")

        aggregator.clear_cache(URL)
        assert URL not in aggregator._locks

        aggregator.clear_cache()
        assert aggregator._locks == {}


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

class TestSignals:

    def _result(self, score, sources=(), disagreement=False, ratio=1.0):
        return ThreatIntelResult(
            url=URL, consensus_score=score, confidence=0.8,
            agreement_ratio=ratio, sources=tuple(sources), disagreement=disagreement,
        )

    @pytest.mark.parametrize("score, severity", [(85, "critical"), (60, "warning"), (20, "info")])
    def test_consensus_severity(self, score, severity):
        signals = threat_intel_to_signals(self._result(score))
        assert signals[0].type == "threat_intel_consensus"
        assert signals[0].severity == severity

    def test_zero_consensus_no_signal(self):
        assert threat_intel_to_signals(self._result(0)) == []

    def test_source_level_signals(self):
        source = _source(malware_family="Emotet", tags=("phishing",))
        types = [s.type for s in threat_intel_to_signals(self._result(90, [source]))]
        assert types == [
            "threat_intel_consensus", "malware_family_detected",
            "threat_tags", "high_confidence_threat",
        ]

    def test_low_reliability_not_high_confidence(self):
        source = _source(reliability=0.5)
        types = [s.type for s in threat_intel_to_signals(self._result(90, [source]))]
        assert "high_confidence_threat" not in types

    def test_disagreement_signal(self):
        signals = threat_intel_to_signals(self._result(60, disagreement=True, ratio=0.5))
        disagreement = signals[-1]
        assert disagreement.type == "threat_intel_disagreement"
        assert "50%" in disagreement.detail


# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------

def _response(payload, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


def _patched_client(response, method="post"):
    client = MagicMock()
    getattr(client, method).return_value = response
    cm = MagicMock()
    cm.__enter__.return_value = client
    return patch("detection.threat_intel.feeds.httpx.Client", return_value=cm)


class TestFeeds:

    def test_urlhaus_online_is_malicious(self):
        payload = {"query_status": "ok", "url_status": "online", "threat": "malware_download",
                   "tags": ["exe"], "payloads": [{"signature": "AgentTesla"}]}
        with _patched_client(_response(payload)):
            result = URLhausFeed().query(URL, 5)
        assert result.verdict == "malicious"
        assert result.score == 90
        assert result.malware_family == "AgentTesla"
        assert result.tags == ("exe",)

    def test_urlhaus_unknown_is_clean(self):
        with _patched_client(_response({"query_status": "no_results"})):
            result = URLhausFeed().query(URL, 5)
        assert result.verdict == "clean"

    def test_virustotal_requires_key(self):
        with pytest.raises(ValueError):
            VirusTotalFeed("")

    def test_virustotal_many_engines(self):
        payload = {"data": {"attributes": {"last_analysis_stats": {"malicious": 10, "suspicious": 0}}}}
        with _patched_client(_response(payload), method="get"):
            result = VirusTotalFeed("key").query(URL, 5)
        assert result.verdict == "malicious"
        assert result.score == 90

    def test_virustotal_not_found_is_clean(self):
        with _patched_client(_response({}, status_code=404), method="get"):
            result = VirusTotalFeed("key").query(URL, 5)
        assert result.verdict == "clean"

    def test_phishtank_verified(self):
        payload = {"results": {"in_database": True, "verified": True}}
        with _patched_client(_response(payload)):
            result = PhishTankFeed().query(URL, 5)
        assert result.verdict == "malicious"
        assert result.category == "phishing"

    def test_build_feeds_skips_virustotal_without_key(self, monkeypatch):
        monkeypatch.delenv("VIRUSTOTAL_API_KEY", raising=False)
        feeds = build_feeds({})
        assert set(feeds) == {"urlhaus", "phishtank"}

    def test_build_feeds_respects_enabled(self, monkeypatch):
        monkeypatch.setenv("VIRUSTOTAL_API_KEY", "key")
        feeds = build_feeds({"urlhaus": {"enabled": False}})
        assert set(feeds) == {"virustotal", "phishtank"}
