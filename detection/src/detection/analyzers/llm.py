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
Analyzer: LLM Review

Sends the email (plus the signals earlier layers found) to a messages API
and maps the JSON verdict it returns to ``llm_*`` signals:

    llm_verdict     overall verdict: phishing 50, likely_phishing 35,
                    suspicious 20, safe 0
    llm_<issue>     one per issue the model listed: critical 15,
                    warning 10, info 5

Only invoked by the pipeline for borderline emails (see the LLM gating
rules in detection.pipeline). Needs ANTHROPIC_API_KEY; without it the
analyzer raises and the layer is skipped.
"""
import json
import logging
import os
import re
from typing import Optional

import httpx

from detection.analyzers._base import BaseAnalyzer
from detection.models import (
    LAYER_LLM,
    SEVERITIES,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    EmailEvent,
    LayerResult,
    Signal,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
DEFAULT_TIMEOUT = 25.0
MAX_BODY_CHARS = 3000

SYSTEM_PROMPT = """You are an email security analyst. Analyze the email and reply with JSON only:
{"verdict": "safe" | "suspicious" | "likely_phishing" | "phishing",
 "confidence": 0.0-1.0,
 "signals": [{"type": "...", "severity": "info" | "warning" | "critical", "detail": "..."}],
 "explanation": "2-3 sentence summary for the recipient",
 "recommendation": "what the recipient should do"}
Weigh sender legitimacy, pressure language, requests for credentials or money,
links, attachments and brand impersonation. Legitimate business email may be urgent."""

VERDICT_SCORES = {
    "phishing": 50,
    "likely_phishing": 35,
    "suspicious": 20,
    "safe": 0,
}
_VERDICT_SEVERITY = {
    "phishing": SEVERITY_CRITICAL,
    "likely_phishing": SEVERITY_CRITICAL,
    "suspicious": SEVERITY_WARNING,
    "safe": SEVERITY_INFO,
}
_ISSUE_SCORES = {SEVERITY_CRITICAL: 15, SEVERITY_WARNING: 10, SEVERITY_INFO: 5}

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_SLUG = re.compile(r"[^a-z0-9]+")


class LLMResponseError(ValueError):
    """The model answered, but not with a usable JSON verdict."""


def parse_verdict(text: str) -> dict:
    """Pull the JSON verdict out of the model's reply and normalise it."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise LLMResponseError("No JSON found in LLM response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise LLMResponseError(f"Failed to parse LLM JSON response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise LLMResponseError("LLM response JSON is not an object")

    if parsed.get("verdict") not in VERDICT_SCORES:
        parsed["verdict"] = "suspicious"
    confidence = parsed.get("confidence")
    if not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
        parsed["confidence"] = 0.5
    if not isinstance(parsed.get("signals"), list):
        parsed["signals"] = []
    parsed.setdefault("explanation", "Analysis complete.")
    parsed.setdefault("recommendation", "Review this email carefully.")
    return parsed


def format_email(email: EmailEvent, prior_signals: list[Signal]) -> str:
    """Render the email and the earlier findings as the user message."""
    sender = f'"{email.sender_name}" <{email.sender}>' if email.sender_name else email.sender
    parts = [
        "=== EMAIL TO ANALYZE ===",
        f"From: {sender}",
        f"To: {', '.join(email.recipients)}",
        f"Subject: {email.subject}",
    ]
    if email.received_at:
        parts.append(f"Date: {email.received_at}")
    if email.reply_to:
        parts.append(f"Reply-To: {email.reply_to}")

    body = email.plain_body
    if len(body) > MAX_BODY_CHARS:
        body = body[:MAX_BODY_CHARS] + "\n[... truncated ...]"
    parts += ["", "=== EMAIL BODY ===", body]

    if email.attachments:
        parts.append("\n=== ATTACHMENTS ===")
        for att in email.attachments:
            parts.append(f"- {att.name} ({att.content_type}, {att.size} bytes)")

    if prior_signals:
        parts.append("\n=== PRIOR ANALYSIS SIGNALS ===")
        for signal in prior_signals:
            parts.append(f"- [{signal.severity.upper()}] {signal.type}: {signal.detail}")

    parts.append("\n=== END EMAIL ===")
    return "\n".join(parts)


class LLMAnalyzer(BaseAnalyzer):
    """Language-model second opinion for borderline emails."""

    layer = LAYER_LLM
    description = "LLM review of borderline emails via a messages API"

    def __init__(
        self,
        model: str = "claude-3-5-haiku-20241022",
        max_tokens: int = 1024,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.api_key = api_key if api_key is not None else os.environ.get("ANTHROPIC_API_KEY", "")
        self.api_url = api_url or os.environ.get("LLM_API_URL", DEFAULT_API_URL)
        self.timeout = timeout
        self._client = client

    def _post(self, payload: dict) -> dict:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }
        if self._client is not None:
            resp = self._client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(self.api_url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()

    def analyze(self, email: EmailEvent, prior_signals: Optional[list[Signal]] = None) -> LayerResult:
        if not self.api_key:
            raise RuntimeError("ANTHROPIC_API_KEY is not set")

        data = self._post({
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": format_email(email, prior_signals or [])}],
        })
        text = next(
            (block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"),
            "",
        )
        if not text:
            raise LLMResponseError("No text response from LLM")

        verdict = parse_verdict(text)
        usage = data.get("usage", {}) or {}
        tokens_used = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
        logger.info(
            "LLM verdict for %s: %s (confidence %.2f, %d tokens)",
            email.message_id, verdict["verdict"], verdict["confidence"], tokens_used,
        )

        return self.result(
            self._to_signals(verdict),
            confidence=float(verdict["confidence"]),
            score=VERDICT_SCORES[verdict["verdict"]],
            verdict=verdict["verdict"],
            recommendation=verdict["recommendation"],
            tokens_used=tokens_used,
        )

    @staticmethod
    def _to_signals(verdict: dict) -> list[Signal]:
        signals = [Signal(
            "llm_verdict",
            _VERDICT_SEVERITY[verdict["verdict"]],
            VERDICT_SCORES[verdict["verdict"]],
            str(verdict["explanation"]),
            metadata={
                "verdict": verdict["verdict"],
                "recommendation": verdict["recommendation"],
                "llm_confidence": verdict["confidence"],
            },
        )]
        for issue in verdict["signals"]:
            if not isinstance(issue, dict):
                continue
            severity = issue.get("severity")
            if severity not in SEVERITIES:
                severity = SEVERITY_WARNING
            kind = _SLUG.sub("_", str(issue.get("type") or "issue").lower()).strip("_") or "issue"
            signals.append(Signal(
                f"llm_{kind}",
                severity,
                _ISSUE_SCORES[severity],
                str(issue.get("detail", "")),
            ))
        return signals
