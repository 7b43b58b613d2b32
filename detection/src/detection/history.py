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
Contact history: who has written to whom, per tenant.

The BEC and behavioral layers read it during analysis (first contact,
typical send hours, usual recipients); the Celery task writes to it after
the verdict is produced, keeping the analysis path read-only.

In-memory and process-local. All access goes through one lock; readers
get copies.
"""
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from detection.models import EmailEvent
from detection.text import domain_of

logger = logging.getLogger(__name__)


def send_hour(email: EmailEvent) -> Optional[int]:
    """Parse hour (0-23 UTC) from the received_at timestamp."""
    if not email.received_at:
        return None
    try:
        dt = datetime.fromisoformat(email.received_at.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.hour


# ---------------------------------------------------------------------------
# Sender profile
# ---------------------------------------------------------------------------

@dataclass
class SenderProfile:
    """Behavioural baseline for one sender address within a tenant."""

    tenant_id: str = ""
    sender: str = ""
    email_count: int = 0
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    known_display_names: list[str] = field(default_factory=list)
    send_hours: dict[int, int] = field(default_factory=dict)
    reply_to_domains: list[str] = field(default_factory=list)
    recipients: dict[str, int] = field(default_factory=dict)

    @property
    def tenure_days(self) -> float:
        """Days since the sender was first seen (0 if unknown)."""
        if not self.first_seen_at:
            return 0.0
        delta = datetime.now(timezone.utc) - self.first_seen_at
        return max(delta.total_seconds() / 86400, 0.0)

    def copy(self) -> "SenderProfile":
        return replace(
            self,
            known_display_names=list(self.known_display_names),
            send_hours=dict(self.send_hours),
            reply_to_domains=list(self.reply_to_domains),
            recipients=dict(self.recipients),
        )


# ---------------------------------------------------------------------------
# History store
# ---------------------------------------------------------------------------

class ContactHistory:
    """Thread-safe sender / recipient history.

    Usage:
        history = ContactHistory()
        history.is_first_contact("tenant-1", "a@x.com", "b@y.com")   # True
        history.record(email)
        history.is_first_contact("tenant-1", "a@x.com", "b@y.com")   # False
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._profiles: dict[tuple[str, str], SenderProfile] = {}
        self._domain_recipients: dict[tuple[str, str], set[str]] = {}

    def record(self, email: EmailEvent) -> None:
        """Add one delivered email to the history."""
        sender = (email.sender or "").strip().lower()
        if not sender:
            return
        tenant_id = email.tenant_id or ""
        domain = domain_of(sender)
        reply_domain = domain_of(email.reply_to)
        hour = send_hour(email)
        now = datetime.now(timezone.utc)

        with self._lock:
            profile = self._profiles.get((tenant_id, sender))
            if profile is None:
                profile = SenderProfile(tenant_id=tenant_id, sender=sender, first_seen_at=now)
                self._profiles[(tenant_id, sender)] = profile

            profile.email_count += 1
            profile.last_seen_at = now
            if email.sender_name and email.sender_name not in profile.known_display_names:
                profile.known_display_names.append(email.sender_name)
            if hour is not None:
                profile.send_hours[hour] = profile.send_hours.get(hour, 0) + 1
            if reply_domain and reply_domain != domain and reply_domain not in profile.reply_to_domains:
                profile.reply_to_domains.append(reply_domain)

            domain_recipients = self._domain_recipients.setdefault((tenant_id, domain), set())
            for recipient in email.recipients:
                profile.recipients[recipient] = profile.recipients.get(recipient, 0) + 1
                domain_recipients.add(recipient)

        logger.debug("Contact history updated: sender=%s recipients=%d", sender, len(email.recipients))

    def profile(self, tenant_id: str, sender: str) -> Optional[SenderProfile]:
        with self._lock:
            profile = self._profiles.get((tenant_id or "", (sender or "").strip().lower()))
            return profile.copy() if profile else None

    def message_count(self, tenant_id: str, sender: str, recipient: str) -> int:
        profile = self.profile(tenant_id, sender)
        if profile is None:
            return 0
        return profile.recipients.get((recipient or "").lower(), 0)

    def is_first_contact(self, tenant_id: str, sender: str, recipient: str) -> bool:
        """True when this exact sender has never written to the recipient."""
        return self.message_count(tenant_id, sender, recipient) == 0

    def domain_has_contacted(self, tenant_id: str, domain: str, recipient: str) -> bool:
        """True when anyone from ``domain`` has written to the recipient."""
        with self._lock:
            recipients = self._domain_recipients.get((tenant_id or "", (domain or "").lower()), set())
            return (recipient or "").lower() in recipients

    def clear(self) -> None:
        with self._lock:
            self._profiles.clear()
            self._domain_recipients.clear()
