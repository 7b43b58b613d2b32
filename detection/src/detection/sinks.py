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
Verdict output sinks.

Three kinds of consumers receive every final verdict:

    persistence   store_verdict(verdict, email)             PostgresVerdictSink
    notification  send_threat_notification(verdict, email) WebhookNotificationSink
                  (quarantine / block only)
    audit         audit(verdict, email)                     LoggingAuditSink

VerdictDispatcher calls each configured sink in turn. A sink that fails is
logged and the remaining sinks still run.
"""
import json
import logging
import os
from typing import Optional

import httpx

from detection.models import VERDICT_BLOCK, VERDICT_QUARANTINE, EmailEvent, EmailVerdict

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("detection.audit")

NOTIFY_VERDICTS = frozenset({VERDICT_QUARANTINE, VERDICT_BLOCK})


def verdict_record(verdict: EmailVerdict, email: Optional[EmailEvent] = None) -> dict:
    """Verdict dict plus the email fields the verdict store keeps."""
    record = verdict.to_dict()
    if email is not None:
        record["sender"] = email.sender
        record["subject"] = email.subject
    return record


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class PostgresVerdictSink:
    """Writes the verdict and its layer results via mailguard_shared.db."""

    def store_verdict(self, verdict: EmailVerdict, email: Optional[EmailEvent] = None) -> int:
        from mailguard_shared.db import get_connection, store_layer_results, store_verdict

        record = verdict_record(verdict, email)
        with get_connection() as conn:
            verdict_id = store_verdict(conn, record)
            store_layer_results(conn, verdict_id, record)
            conn.commit()
        logger.info("Persisted verdict for %s (verdict_id=%d)", verdict.message_id, verdict_id)
        return verdict_id


class WebhookNotificationSink:
    """POSTs a threat notification to a webhook for quarantine/block verdicts."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url if url is not None else os.environ.get("MAILGUARD_NOTIFY_WEBHOOK_URL", "")
        self.timeout = timeout
        self._client = client

    def payload(self, verdict: EmailVerdict, email: Optional[EmailEvent] = None) -> dict:
        sender = email.sender if email is not None else ""
        return {
            "type": "threat_detected",
            "message_id": verdict.message_id,
            "tenant_id": verdict.tenant_id,
            "verdict": verdict.verdict,
            "score": verdict.overall_score,
            "sender": sender,
            "subject": email.subject if email is not None else "",
            "message": verdict.explanation or f"Threat detected from {sender or 'unknown sender'}",
            "recommendation": verdict.recommendation,
            "signals": [s.type for s in verdict.signals if s.score > 0],
        }

    def send_threat_notification(self, verdict: EmailVerdict, email: Optional[EmailEvent] = None) -> bool:
        """Returns True when a notification was sent."""
        if verdict.verdict not in NOTIFY_VERDICTS:
            return False
        if not self.url:
            logger.debug("No notification webhook configured, skipping %s", verdict.message_id)
            return False

        payload = self.payload(verdict, email)
        if self._client is not None:
            resp = self._client.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        else:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.url, json=payload)
                resp.raise_for_status()

        logger.info("Sent %s notification for %s", verdict.verdict, verdict.message_id)
        return True


class LoggingAuditSink:
    """One structured audit line per verdict on the ``detection.audit`` logger."""

    def audit(self, verdict: EmailVerdict, email: Optional[EmailEvent] = None) -> None:
        entry = {
            "message_id": verdict.message_id,
            "tenant_id": verdict.tenant_id,
            "verdict": verdict.verdict,
            "score": verdict.overall_score,
            "confidence": round(verdict.confidence, 4),
            "signals": [s.type for s in verdict.signals],
            "skipped_layers": {
                lr.layer: lr.skip_reason for lr in verdict.layer_results if lr.skipped
            },
            "policy": verdict.policy_applied.policy_name if verdict.policy_applied else None,
            "llm_tokens_used": verdict.llm_tokens_used,
        }
        if email is not None:
            entry["sender"] = email.sender
        audit_logger.info("verdict %s", json.dumps(entry, sort_keys=True))


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class VerdictDispatcher:
    """Fan a final verdict out to the persistence, notification and audit sinks."""

    def __init__(self, persistence=None, notifier=None, auditor=None):
        self.persistence = persistence
        self.notifier = notifier
        self.auditor = auditor

    def dispatch(self, verdict: EmailVerdict, email: Optional[EmailEvent] = None) -> dict[str, bool]:
        """Invoke every configured sink. Returns sink name -> succeeded."""
        outcome: dict[str, bool] = {}
        calls = (
            ("persistence", self.persistence, "store_verdict"),
            ("notification", self.notifier, "send_threat_notification"),
            ("audit", self.auditor, "audit"),
        )
        for name, sink, method in calls:
            if sink is None:
                continue
            try:
                getattr(sink, method)(verdict, email)
                outcome[name] = True
            except Exception as exc:
                logger.warning("%s sink failed for %s (non-fatal): %s", name, verdict.message_id, exc)
                outcome[name] = False
        return outcome
