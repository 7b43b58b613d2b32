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
DNS blocklist reputation source.

Checks IPs, domains, URL hosts and (optionally) email addresses against
DNS-based blocklists:

  - Spamhaus ZEN (zen.spamhaus.org)  combined IP list (SBL, XBL, PBL)
  - Spamhaus DBL (dbl.spamhaus.org)  domain blocklist, also used for URL hosts
  - SpamCop (bl.spamcop.net)         IP blocklist based on spam reports
  - NiX Spam (ix.dnsbl.manitu.net)   generic IP blocklist
  - Spamhaus HBL                     hashed email addresses, only with a
                                     Spamhaus DQS key (SPAMHAUS_DQS_KEY)

Each answer is cached in Redis for an hour (NXDOMAIN included) under
``reputation:<kind>:<provider>:<entity>``. Reputation scores run the other
way from threat scores: 0 = malicious, 100 = trusted.
"""
import hashlib
import ipaddress
import logging
import os
import re
import socket
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

import redis

logger = logging.getLogger(__name__)

CATEGORY_CLEAN = "clean"
CATEGORY_SUSPICIOUS = "suspicious"
CATEGORY_MALICIOUS = "malicious"
CATEGORY_UNKNOWN = "unknown"

# Return code -> human-readable label
ZEN_CODES = {
    "127.0.0.2": "SBL",
    "127.0.0.3": "SBL-CSS",
    "127.0.0.4": "XBL-CBL",
    "127.0.0.5": "XBL-CBL",
    "127.0.0.6": "XBL-CBL",
    "127.0.0.7": "XBL-CBL",
    "127.0.0.9": "SBL-DROP",
    "127.0.0.10": "PBL",
    "127.0.0.11": "PBL",
}

DBL_CODES = {
    "127.0.1.2": "spam-domain",
    "127.0.1.4": "phish-domain",
    "127.0.1.5": "malware-domain",
    "127.0.1.6": "botnet-cc-domain",
    "127.0.1.102": "abused-legit-spam",
    "127.0.1.103": "abused-legit-registrar",
    "127.0.1.104": "abused-legit-phish",
    "127.0.1.105": "abused-legit-malware",
    "127.0.1.106": "abused-legit-botnet",
}

HBL_CODES = {
    "127.0.3.2": "hbl-email",
}

GENERIC_CODES = {
    "127.0.0.2": "Listed",
}

# Listings that mark the entity as suspicious rather than malicious:
# policy lists and legitimate sites that were abused.
SOFT_LISTINGS = frozenset({
    "PBL",
    "abused-legit-spam", "abused-legit-registrar", "abused-legit-phish",
    "abused-legit-malware", "abused-legit-botnet",
})

PROVIDERS = [
    {"id": "spamhaus_zen", "type": "ip", "zone": "zen.spamhaus.org", "codes": ZEN_CODES},
    {"id": "spamcop", "type": "ip", "zone": "bl.spamcop.net", "codes": GENERIC_CODES},
    {"id": "nix_spam", "type": "ip", "zone": "ix.dnsbl.manitu.net", "codes": GENERIC_CODES},
    {"id": "spamhaus_dbl", "type": "domain", "zone": "dbl.spamhaus.org", "codes": DBL_CODES},
]

# Redis cache TTL (seconds)
CACHE_TTL = 3600
_NXDOMAIN = "NXDOMAIN"

# Regex to pull IPs from Received headers
_IP_RE = re.compile(r"\b(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})\b")


@dataclass
class EntityReputation:
    """Reputation of one domain / IP / URL / email address."""
    score: int = 50
    category: str = CATEGORY_UNKNOWN
    sources: list = field(default_factory=list)


def extract_sender_ip(headers: dict) -> Optional[str]:
    """Extract the originating public IP from Received headers.

    Walks the Received chain and returns the first public IP found.
    Private/reserved ranges are skipped.
    """
    received = next((v for k, v in headers.items() if k.lower() == "received"), "")
    if isinstance(received, list):
        received = "\n".join(received)

    for match in _IP_RE.finditer(received):
        ip_str = match.group(1)
        try:
            ip = ipaddress.ip_address(ip_str)
        except ValueError:
            continue
        if ip.is_global:
            return ip_str
    return None


def _listing_reputation(labels: list[str]) -> EntityReputation:
    if not labels:
        return EntityReputation(score=50, category=CATEGORY_UNKNOWN, sources=[])
    if all(label in SOFT_LISTINGS for label in labels):
        return EntityReputation(score=35, category=CATEGORY_SUSPICIOUS, sources=labels)
    return EntityReputation(score=0, category=CATEGORY_MALICIOUS, sources=labels)


class DnsblReputationSource:
    """Blocklist lookups with a shared Redis answer cache.

    Usage:
        source = DnsblReputationSource()
        reps = source.lookup(domains=["example.com"], ips=["203.0.113.7"])
        reps["example.com"].category   # "unknown" unless listed
    """

    def __init__(
        self,
        client: Optional["redis.Redis"] = None,
        redis_url: Optional[str] = None,
        dqs_key: Optional[str] = None,
        providers: Optional[list[dict]] = None,
    ):
        self._client = client
        self._redis_url = redis_url or os.environ.get("REDIS_URL", "redis://localhost:6379/0")
        self.dqs_key = dqs_key if dqs_key is not None else os.environ.get("SPAMHAUS_DQS_KEY", "")
        self.providers = providers if providers is not None else PROVIDERS

    @property
    def client(self) -> "redis.Redis":
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    # --- Raw DNS ---

    def _resolve(self, query: str, cache_key: str) -> Optional[str]:
        """Return the first A record for ``query``, or None when not listed."""
        try:
            cached = self.client.get(cache_key)
        except redis.RedisError as exc:
            logger.warning("Reputation cache read failed for %s: %s", cache_key, exc)
            cached = None
        if cached:
            return None if cached == _NXDOMAIN else cached

        try:
            answer = socket.gethostbyname(query)
        except socket.gaierror:
            # NXDOMAIN = not listed (normal)
            answer = None
        except OSError as exc:
            logger.warning("DNSBL lookup error for %s: %s", query, exc)
            return None

        try:
            self.client.setex(cache_key, CACHE_TTL, answer or _NXDOMAIN)
        except redis.RedisError as exc:
            logger.warning("Reputation cache write failed for %s: %s", cache_key, exc)
        return answer

    # --- Per-entity checks ---

    def check_ip(self, ip: str) -> EntityReputation:
        try:
            if ipaddress.ip_address(ip).version != 4:
                return EntityReputation()
        except ValueError:
            return EntityReputation()

        reversed_ip = ".".join(ip.split(".")[::-1])
        labels = []
        for provider in (p for p in self.providers if p["type"] == "ip"):
            answer = self._resolve(
                f"{reversed_ip}.{provider['zone']}",
                f"reputation:ip:{provider['id']}:{ip}",
            )
            if answer:
                labels.append(provider["codes"].get(answer, f"unknown({answer})"))
        return _listing_reputation(labels)

    def check_domain(self, domain: str) -> EntityReputation:
        domain = domain.lower().strip(".")
        labels = []
        for provider in (p for p in self.providers if p["type"] == "domain"):
            answer = self._resolve(
                f"{domain}.{provider['zone']}",
                f"reputation:domain:{provider['id']}:{domain}",
            )
            if answer:
                labels.append(provider["codes"].get(answer, f"unknown({answer})"))
        return _listing_reputation(labels)

    def check_url(self, url: str) -> EntityReputation:
        try:
            host = (urlparse(url).hostname or "").lower()
        except ValueError:
            return EntityReputation(score=35, category=CATEGORY_SUSPICIOUS, sources=["malformed-url"])
        if not host:
            return EntityReputation()
        try:
            ipaddress.ip_address(host)
        except ValueError:
            return self.check_domain(host)
        return self.check_ip(host)

    def check_email(self, address: str) -> EntityReputation:
        if not self.dqs_key:
            return EntityReputation()
        digest = hashlib.sha256(address.strip().lower().encode()).hexdigest()
        answer = self._resolve(
            f"{digest}._email.{self.dqs_key}.hbl.dq.spamhaus.net",
            f"reputation:email:spamhaus_hbl:{digest}",
        )
        labels = [HBL_CODES.get(answer, f"unknown({answer})")] if answer else []
        return _listing_reputation(labels)

    def lookup(
        self,
        domains: Optional[list[str]] = None,
        ips: Optional[list[str]] = None,
        urls: Optional[list[str]] = None,
        emails: Optional[list[str]] = None,
    ) -> dict[str, EntityReputation]:
        """Reputation for every entity, keyed by the entity string."""
        results: dict[str, EntityReputation] = {}
        for ip in ips or []:
            results[ip] = self.check_ip(ip)
        for domain in domains or []:
            results[domain] = self.check_domain(domain)
        for url in urls or []:
            results[url] = self.check_url(url)
        for address in emails or []:
            results[address] = self.check_email(address)
        return results
