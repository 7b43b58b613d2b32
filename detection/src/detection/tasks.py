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
MailGuard Detection — Celery Tasks

analyze_email:              run the pipeline on one email, hand the verdict
                            to the sinks and publish it on the "verdicts" queue
record_lookalike_feedback:  operator feedback for the lookalike learner
"""
import json
import logging

from detection.celery_app import app
from detection.factory import build_dispatcher, build_pipeline
from detection.history import ContactHistory
from detection.lookalike import LookalikeDetection, LookalikeLearningService
from detection.models import VERDICT_BLOCK, VERDICT_QUARANTINE, EmailEvent, EmailVerdict

logger = logging.getLogger(__name__)

# Lazy-initialised singletons (created on first use by each worker process)
_pipeline = None
_dispatcher = None
_lookalike = None
_history = None


def _get_lookalike() -> LookalikeLearningService:
    global _lookalike
    if _lookalike is None:
        _lookalike = LookalikeLearningService()
    return _lookalike


def _get_history() -> ContactHistory:
    global _history
    if _history is None:
        _history = ContactHistory()
    return _history


def _get_pipeline():
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline(lookalike=_get_lookalike(), history=_get_history())
    return _pipeline


def _get_dispatcher():
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher()
    return _dispatcher


def _already_processed(message_id: str) -> bool:
    """True when the verdict store already has this message. DB errors mean 'no'."""
    try:
        from mailguard_shared.db import get_connection, is_message_processed
        with get_connection() as conn:
            return is_message_processed(conn, message_id)
    except Exception as exc:
        logger.warning("Processed-message check failed for %s, analyzing anyway: %s", message_id, exc)
        return False


def learn_lookalikes(lookalike: LookalikeLearningService, verdict: EmailVerdict) -> int:
    """Feed the lookalike signals of a quarantined / blocked email to the learner."""
    if verdict.verdict not in (VERDICT_QUARANTINE, VERDICT_BLOCK):
        return 0

    # Layer results keep every signal; verdict.signals holds one per type
    seen = set()
    recorded = 0
    for signal in (s for result in verdict.layer_results for s in result.signals):
        meta = signal.metadata
        if not (meta.get("attack_type") and meta.get("domain")) or meta.get("target_brand") in (None, "", "*"):
            continue
        key = (meta["domain"], meta["target_brand"], meta["attack_type"])
        if key in seen:
            continue
        seen.add(key)
        lookalike.record_detection(LookalikeDetection(
            attacker_domain=meta["domain"],
            target_brand=meta["target_brand"],
            target_domain=meta.get("target_domain") or "",
            attack_type=meta["attack_type"],
            confidence=float(meta.get("confidence", 0.0)),
        ))
        recorded += 1
    return recorded


@app.task(
    name="detection.tasks.analyze_email",
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    acks_late=True,
)
def analyze_email(self, email_event_json: str):
    """
    Analyze an email event, fan the verdict out to the sinks and publish it.

    1. skip messages that already have a stored verdict
    2. run the detection pipeline
    3. persistence / notification / audit sinks (each best-effort)
    4. update contact history and the lookalike learner
    5. publish to verdict.tasks.execute_verdict on the "verdicts" queue
    """
    try:
        email = EmailEvent.from_dict(json.loads(email_event_json))

        logger.info(
            "Analyzing email: message_id=%s tenant=%s from=%s subject=%s",
            email.message_id, email.tenant_alias or email.tenant_id,
            email.sender, email.subject,
        )

        if _already_processed(email.message_id):
            logger.info("Skipping already-processed message: %s", email.message_id)
            return {"message_id": email.message_id, "status": "already_processed"}

        verdict = _get_pipeline().analyze(email, email.tenant_id)
        sinks = _get_dispatcher().dispatch(verdict, email)

        try:
            _get_history().record(email)
            learn_lookalikes(_get_lookalike(), verdict)
        except Exception as exc:
            logger.warning("History / lookalike update failed (non-fatal): %s", exc)

        verdict_dict = verdict.to_dict()
        verdict_dict["sender"] = email.sender
        verdict_dict["subject"] = email.subject
        app.send_task(
            "verdict.tasks.execute_verdict",
            args=[json.dumps(verdict_dict)],
            queue="verdicts",
        )

        logger.info(
            "Verdict published: message_id=%s verdict=%s score=%d",
            verdict.message_id, verdict.verdict, verdict.overall_score,
        )
        return {
            "message_id": verdict.message_id,
            "verdict": verdict.verdict,
            "overall_score": verdict.overall_score,
            "sinks": sinks,
        }

    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON in email event: %s", exc)
        raise

    except Exception as exc:
        logger.exception("Failed to analyze email: %s", exc)
        raise self.retry(exc=exc)


@app.task(name="detection.tasks.record_lookalike_feedback")
def record_lookalike_feedback(domain: str, was_correct: bool, confirmed_threat: bool, source: str = "user"):
    """Apply operator feedback on a lookalike verdict to this worker's learner."""
    adjusted = _get_lookalike().record_feedback(domain, was_correct, confirmed_threat, source)
    logger.info(
        "Lookalike feedback for %s (correct=%s, threat=%s, source=%s): %d pattern(s) adjusted",
        domain, was_correct, confirmed_threat, source, adjusted,
    )
    return {"domain": domain, "patterns_adjusted": adjusted}
