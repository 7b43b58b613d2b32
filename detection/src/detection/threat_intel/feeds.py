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
Threat-intelligence feed clients.

Each feed answers one question, "what do you know about this URL?", as a
FeedResponse with a verdict (clean / suspicious / malicious) and a 0-100
score. HTTP failures surface as httpx.HTTPError; the aggregator isolates
them per feed.

Feeds:
    urlhaus      abuse.ch URLhaus lookup API
    virustotal   VirusTotal v3 URL report (needs an API key)
    phishtank    PhishTank checkurl API
"""

import base64
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

VERDICT_CLEAN = "clean"
VERDICT_SUSPICIOUS = "suspicious"
VERDICT_MALICIOUS = "malicious"


@dataclass(frozen=True)
class FeedResponse:
    verdict: str
    score: float
    reliability: Optional[float] = None
    category: str = ""
    malware_family: str = ""
    tags: tuple = ()


CLEAN = FeedResponse(verdict=VERDICT_CLEAN, score=0)


class ThreatFeed(ABC):
    """A single threat-intel source."""

    name: str = ""

    @abstractmethod
    def query(self, url: str, timeout: float) -> FeedResponse:
        """Look up one URL. May raise httpx.HTTPError."""
        ...


# ---------------------------------------------------------------------------
# URLhaus
# ---------------------------------------------------------------------------

class URLhausFeed(ThreatFeed):
    name = "urlhaus"
    API_URL = "https://urlhaus-api.abuse.ch/v1/url/"

    def __init__(self, auth_key: str = ""):
        self.auth_key = auth_key

    def query(self, url: str, timeout: float) -> FeedResponse:
        headers = {"Auth-Key": self.auth_key} if self.auth_key else {}
        with httpx.Client(timeout=timeout) as client:
            resp = client.post(self.API_URL, data={"url": url}, headers=headers)
            resp.raise_for_status()
        data = resp.json()

        if data.get("query_status") != "ok":
            return CLEAN

        tags = tuple(data.get("tags") or ())
        payloads = data.get("payloads") or []
        family = next((p.get("signature") for p in payloads if p.get("signature")), "") or ""
        online = data.get("url_status") == "online"
        return FeedResponse(
            verdict=VERDICT_MALICIOUS if online else VERDICT_SUSPICIOUS,
            score=90 if online else 60,
            category=data.get("threat", "") or "",
            malware_family=family,
            tags=tags,
        )


# ---------------------------------------------------------------------------
# VirusTotal
# ---------------------------------------------------------------------------

class VirusTotalFeed(ThreatFeed):
    name = "virustotal"
    API_URL = "https://www.virustotal.com/api/v3/urls/{id}"

    # Engines that must flag a URL before it counts as malicious
    MALICIOUS_ENGINES = 5

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("VirusTotal feed requires an API key")
        self.api_key = api_key

    @staticmethod
    def url_id(url: str) -> str:
        """VirusTotal's URL identifier: unpadded urlsafe base64 of the URL."""
        return base64.urlsafe_b64encode(url.encode()).decode().strip("=")

    def query(self, url: str, timeout: float) -> FeedResponse:
        with httpx.Client(timeout=timeout) as client:
            resp = client.get(
                self.API_URL.format(id=self.url_id(url)),
                headers={"x-apikey": self.api_key},
            )
            if resp.status_code == 404:
                return CLEAN
            resp.raise_for_status()

        attributes = resp.json().get("data", {}).get("attributes", {})
        stats = attributes.get("last_analysis_stats", {}) or {}
        malicious = int(stats.get("malicious", 0))
        suspicious = int(stats.get("suspicious", 0))
        categories = attributes.get("categories", {}) or {}
        category = next(iter(categories.values()), "") if categories else ""
        tags = tuple(attributes.get("tags") or ())

        if malicious >= self.MALICIOUS_ENGINES:
            return FeedResponse(VERDICT_MALICIOUS, min(100, 70 + malicious * 2), category=category, tags=tags)
        if malicious > 0 or suspicious >= 2:
            return FeedResponse(VERDICT_SUSPICIOUS, min(69, 30 + malicious * 8 + suspicious * 4),
                                category=category, tags=tags)
        return FeedResponse(VERDICT_CLEAN, 0, category=category)


# ---------------------------------------------------------------------------
# PhishTank
# ---------------------------------------------------------------------------

class PhishTankFeed(ThreatFeed):
    name = "phishtank"
    API_URL = "https://checkurl.phishtank.com/checkurl/"

    def __init__(self, app_key: str = "", user_agent: str = "phishtank/mailguard"):
        self.app_key = app_key
        self.user_agent = user_agent

    def query(self, url: str, timeout: float) -> FeedResponse:
        form = {"url": url, "format": "json"}
        if self.app_key:
            form["app_key"] = self.app_key
        with httpx.Client(timeout=timeout) as client:
            resp = client.post(self.API_URL, data=form, headers={"User-Agent": self.user_agent})
            resp.raise_for_status()

        results = resp.json().get("results", {}) or {}
        if not results.get("in_database"):
            return CLEAN
        if results.get("valid") or results.get("verified"):
            return FeedResponse(VERDICT_MALICIOUS, 95, category="phishing")
        return FeedResponse(VERDICT_SUSPICIOUS, 60, category="phishing")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def build_feeds(config: Optional[dict] = None) -> dict[str, ThreatFeed]:
    """Build the configured feeds.

    ``config`` is the ``threat_intel:`` section of config.yaml:

        threat_intel:
          urlhaus: {enabled: true, auth_key: "..."}
          virustotal: {api_key: "..."}
          phishtank: {app_key: "..."}

    Keys fall back to URLHAUS_AUTH_KEY, VIRUSTOTAL_API_KEY and
    PHISHTANK_APP_KEY. VirusTotal is only enabled when a key is available.
    """
    config = config or {}
    feeds: dict[str, ThreatFeed] = {}

    urlhaus = config.get("urlhaus", {}) or {}
    if urlhaus.get("enabled", True):
        feeds["urlhaus"] = URLhausFeed(urlhaus.get("auth_key") or os.environ.get("URLHAUS_AUTH_KEY", ""))

    virustotal = config.get("virustotal", {}) or {}
    vt_key = virustotal.get("api_key") or os.environ.get("VIRUSTOTAL_API_KEY", "")
    if vt_key and virustotal.get("enabled", True):
        feeds["virustotal"] = VirusTotalFeed(vt_key)

    phishtank = config.get("phishtank", {}) or {}
    if phishtank.get("enabled", True):
        feeds["phishtank"] = PhishTankFeed(phishtank.get("app_key") or os.environ.get("PHISHTANK_APP_KEY", ""))

    logger.info("Threat feeds enabled: %s", ", ".join(feeds) or "none")
    return feeds
