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

"""False-positive dampening predicates used by the score engine."""
from datetime import datetime, timezone
from typing import Optional

from detection.models import SEVERITY_CRITICAL, Attachment, FeedbackContext, Signal, ThreadContext
from detection.scoring import rules


def has_critical_bec(signals: list[Signal]) -> bool:
    return any(
        s.type in rules.CRITICAL_BEC_SIGNALS and s.severity == SEVERITY_CRITICAL
        for s in signals
    )


def is_institutional_domain(domain: str) -> bool:
    if not domain:
        return False
    domain = domain.lower()
    if domain.endswith(rules.INSTITUTIONAL_TLDS):
        return True
    return any(domain == d or domain.endswith("." + d) for d in rules.KNOWN_NONPROFIT_DOMAINS)


def is_spoofed(signals: list[Signal]) -> bool:
    """A lookalike signal means the institutional-looking domain can't be trusted."""
    return any(s.type in rules.SPOOF_SIGNALS for s in signals)


def can_dampen_institutional(domain: str, signals: list[Signal]) -> bool:
    return is_institutional_domain(domain) and not is_spoofed(signals) and not has_critical_bec(signals)


def can_dampen_thread(thread: Optional[ThreadContext], sender: str, signals: list[Signal]) -> bool:
    if thread is None or not thread.is_reply or thread.depth < 1:
        return False

    # A new participant in an existing thread may be a hijack
    if sender and thread.previous_senders:
        previous = {p.lower() for p in thread.previous_senders}
        if sender.lower() not in previous:
            return False

    return not has_critical_bec(signals)


def can_dampen_attachments(attachments: list[Attachment], is_known_sender: bool) -> bool:
    if not attachments or not is_known_sender:
        return False
    if any(a.is_password_protected or a.has_macros for a in attachments):
        return False
    content_types = [(a.content_type or "").lower() for a in attachments]
    return any(
        marker in ct
        for ct in content_types
        for marker in rules.SAFE_DOCUMENT_MARKERS
    )


def can_dampen_feedback(
    feedback: Optional[FeedbackContext],
    signals: list[Signal],
    now: Optional[datetime] = None,
) -> bool:
    if feedback is None or not feedback.sender_marked_safe:
        return False

    if feedback.last_feedback_at is not None:
        now = now or datetime.now(timezone.utc)
        last = feedback.last_feedback_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        if (now - last).days > rules.FEEDBACK_EXPIRY_DAYS:
            return False

    return not has_critical_bec(signals)


def can_dampen_pattern_fp(feedback: Optional[FeedbackContext]) -> bool:
    if feedback is None:
        return False
    if feedback.similar_pattern_count < rules.PATTERN_FP_MIN_SAMPLES:
        return False
    return feedback.similar_pattern_fp_rate > rules.PATTERN_FP_RATE
