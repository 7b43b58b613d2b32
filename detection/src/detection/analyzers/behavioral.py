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
Analyzer: Behavioral Anomalies

Compares the email against the sender's history in the tenant:

  - send hour more than 2σ from the sender's usual hours (>= 10 samples)
  - many recipients the sender has never written to before
  - a display name the sender has never used
  - a Reply-To domain the sender has never used

Any anomaly produces one ``behavioral_anomaly`` signal listing every
reason (10 points each, capped at 30). Senders without history produce no
signal.
"""
import logging
import math
from typing import Optional

from detection.analyzers._base import BaseAnalyzer
from detection.history import ContactHistory, SenderProfile, send_hour
from detection.models import (
    LAYER_BEHAVIORAL,
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    EmailEvent,
    LayerResult,
    Signal,
)
from detection.text import domain_of

logger = logging.getLogger(__name__)

MIN_HOUR_SAMPLES = 10
MIN_MESSAGES_FOR_SPREAD = 5
NEW_RECIPIENT_MIN = 3
NEW_RECIPIENT_SHARE = 0.5
POINTS_PER_ANOMALY = 10
MAX_SCORE = 30


def detect_time_anomaly(send_hours: dict[int, int], hour: int) -> Optional[tuple[float, float]]:
    """Return (mean, std_dev) when ``hour`` is >2σ from the distribution."""
    total = sum(send_hours.values())
    if total < MIN_HOUR_SAMPLES:
        return None

    mean_hour = sum(int(h) * c for h, c in send_hours.items()) / total
    variance = sum(c * (int(h) - mean_hour) ** 2 for h, c in send_hours.items()) / total
    std_dev = math.sqrt(variance) if variance > 0 else 1.0

    if abs(hour - mean_hour) > 2 * std_dev:
        return mean_hour, std_dev
    return None


class BehavioralAnalyzer(BaseAnalyzer):
    """Sender behaviour compared with the tenant's contact history."""

    layer = LAYER_BEHAVIORAL
    description = "Send-time, recipient-spread and identity anomalies against sender history"

    def __init__(self, history: ContactHistory):
        self.history = history

    def analyze(self, email: EmailEvent, prior_signals: Optional[list[Signal]] = None) -> LayerResult:
        profile = self.history.profile(email.tenant_id, email.sender)
        if profile is None:
            return self.result([], confidence=0.3, baseline="none")

        reasons = self._anomalies(email, profile)
        signals: list[Signal] = []
        if reasons:
            signals.append(Signal(
                "behavioral_anomaly",
                SEVERITY_CRITICAL if len(reasons) >= 3 else SEVERITY_WARNING,
                min(MAX_SCORE, POINTS_PER_ANOMALY * len(reasons)),
                "; ".join(reasons),
                metadata={"anomaly_count": len(reasons), "history_messages": profile.email_count},
            ))
            logger.info("Behavioral anomalies for %s: %s", email.message_id, "; ".join(reasons))

        return self.result(
            signals,
            confidence=min(0.9, 0.5 + profile.email_count / 100),
            baseline="sender",
            history_messages=profile.email_count,
        )

    @staticmethod
    def _anomalies(email: EmailEvent, profile: SenderProfile) -> list[str]:
        reasons: list[str] = []

        hour = send_hour(email)
        if hour is not None:
            anomaly = detect_time_anomaly(profile.send_hours, hour)
            if anomaly is not None:
                mean_hour, std_dev = anomaly
                reasons.append(
                    f"Sent at {hour:02d}:00 UTC, outside this sender's usual hours "
                    f"(mean {mean_hour:.1f} ± {std_dev:.1f})"
                )

        if profile.email_count >= MIN_MESSAGES_FOR_SPREAD and email.recipients:
            new = [r for r in email.recipients if r not in profile.recipients]
            if len(new) >= NEW_RECIPIENT_MIN and len(new) / len(email.recipients) >= NEW_RECIPIENT_SHARE:
                reasons.append(f"Sent to {len(new)} recipients this sender has never written to")

        if email.sender_name and profile.known_display_names and email.sender_name not in profile.known_display_names:
            reasons.append(f'Display name "{email.sender_name}" not previously used by this sender')

        reply_domain = domain_of(email.reply_to)
        if reply_domain and reply_domain != email.sender_domain and reply_domain not in profile.reply_to_domains:
            reasons.append(f"Reply-To domain {reply_domain} not previously used by this sender")

        return reasons
