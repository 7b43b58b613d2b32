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
False-positive filter applied to every layer's signals.

Rules:
  - gift card signals are dropped when the classifier says gift card talk
    is normal for this sender (retail, marketing)
  - a reply-to mismatch pointing at one of a known sender's registered
    reply-to domains is dropped (eBay replies via reply.ebay.com)
  - URL signals on a known sender's tracking domain become an info
    ``url_whitelisted`` signal scored 0

Running the filter twice gives the same result as running it once.
"""
import logging
import re
from typing import Optional
from urllib.parse import urlparse

from detection.models import SEVERITY_INFO, Classification, ReputationContext, Signal
from detection.text import domain_matches

logger = logging.getLogger(__name__)

GIFT_CARD_SIGNALS = frozenset({"bec_gift_card_scam", "gift_card_request"})
REPLY_TO_SIGNALS = frozenset({"reply_to_mismatch", "bec_reply_to_mismatch"})
URL_SIGNALS = frozenset({"suspicious_url", "url_shortener"})

_DOMAIN_IN_PARENS = re.compile(r"\(([a-z0-9.-]+\.[a-z]+)\)", re.IGNORECASE)


def _reply_to_domain(signal: Signal) -> str:
    domain = signal.metadata.get("reply_to_domain", "")
    if domain:
        return str(domain).lower()
    match = _DOMAIN_IN_PARENS.search(signal.detail or "")
    return match.group(1).lower() if match else ""


def _url_host(signal: Signal) -> str:
    host = signal.metadata.get("host", "")
    if host:
        return str(host).lower()
    url = signal.metadata.get("url", "")
    if not url:
        return ""
    try:
        return (urlparse(str(url)).hostname or "").lower()
    except ValueError:
        return ""


def filter_signals(
    signals: list[Signal],
    classification: Optional[Classification] = None,
    reputation_context: Optional[ReputationContext] = None,
) -> list[Signal]:
    """Drop or neutralise signals that are known false positives for this sender."""
    if classification is None and reputation_context is None:
        return list(signals)

    sender_info = classification.sender_info if classification else None
    known_sender = bool(
        (classification and classification.is_known_sender)
        or (reputation_context and reputation_context.is_known_sender)
    )

    reply_to_domains: list[str] = []
    tracking_domains: list[str] = []
    if sender_info is not None:
        reply_to_domains.extend([sender_info.domain] + list(sender_info.reply_to_domains))
        tracking_domains.extend(sender_info.tracking_domains)
    if reputation_context is not None:
        reply_to_domains.extend(reputation_context.reply_to_domains)
        tracking_domains.extend(reputation_context.known_tracking_domains)

    skip_gift_card = bool(classification and classification.skip_gift_card_detection)
    sender_label = (
        (sender_info.name if sender_info else "")
        or (reputation_context.sender_name if reputation_context else "")
        or "known sender"
    )

    filtered: list[Signal] = []
    for signal in signals:
        if skip_gift_card and (
            signal.type in GIFT_CARD_SIGNALS or "gift card" in (signal.detail or "").lower()
        ):
            logger.debug("Dropped %s: gift card talk expected from this sender", signal.type)
            continue

        if known_sender and signal.type in REPLY_TO_SIGNALS:
            reply_domain = _reply_to_domain(signal)
            if reply_domain and domain_matches(reply_domain, reply_to_domains):
                logger.debug("Dropped %s: %s is a registered reply-to domain", signal.type, reply_domain)
                continue

        if known_sender and signal.type in URL_SIGNALS and tracking_domains:
            host = _url_host(signal)
            if host and domain_matches(host, tracking_domains):
                filtered.append(Signal(
                    type="url_whitelisted",
                    severity=SEVERITY_INFO,
                    score=0,
                    detail=f"Tracking URL whitelisted for {sender_label}",
                    metadata={"original_signal": signal.type, "host": host},
                ))
                continue

        filtered.append(signal)

    return filtered
