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
MailGuard Detection Pipeline

Orchestrates analysis of one email:

1. Policy check. ``allow`` returns pass/0 and ``block`` returns block/100
   straight away; other matches are noted and analysis continues.
2. Email type classification (marketing, transactional, ...).
3. Layers, in order, each under its own timeout:
       deterministic -> reputation -> ml -> bec -> llm (gated) -> sandbox -> behavioral
   Every layer's signals go through the false-positive filter and the
   layer score is recomputed from what survives.
4. Score aggregation (detection.scoring), then sender trust or
   classification dampening.
5. Verdict from the tenant's thresholds, plus explanation text.

``analyze`` never raises: a failing, slow or missing analyzer becomes a
skipped layer with a reason, and collaborator errors are logged.
"""
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import replace
from typing import Any, Callable, Optional

from detection.config import DetectionConfig, Thresholds
from detection.filters import filter_signals
from detection.models import (
    LAYER_BEC,
    LAYER_BEHAVIORAL,
    LAYER_DETERMINISTIC,
    LAYER_LLM,
    LAYER_ML,
    LAYER_REPUTATION,
    LAYER_SANDBOX,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    VERDICT_BLOCK,
    VERDICT_PASS,
    VERDICT_QUARANTINE,
    VERDICT_SUSPICIOUS,
    Classification,
    EmailEvent,
    EmailVerdict,
    FeedbackContext,
    LayerResult,
    PolicyResult,
    ReputationContext,
    Signal,
    round_half_up,
)
from detection.scoring.engine import ScoreOptions, calculate_enhanced_score, dedupe_signals

logger = logging.getLogger(__name__)

# BEC is "suspected but unconfirmed" in this band
BEC_SUSPECTED_SCORE = 30
BEC_CONFIRMED_CONFIDENCE = 0.8

# quick_check cut-offs
QUICK_PASS_SCORE = 15
QUICK_PASS_CONFIDENCE = 0.8
QUICK_BLOCK_SCORE = 80

# LLM token estimate: ~4 characters per token, plus prompt and response
PROMPT_TOKENS = 500
RESPONSE_TOKENS = 300

RECOMMENDATIONS = {
    VERDICT_BLOCK: (
        "This email has been blocked and will not be delivered. "
        "If you believe this is an error, contact your administrator."
    ),
    VERDICT_QUARANTINE: (
        "This email has been quarantined for review. "
        "An administrator can release it if deemed safe."
    ),
    VERDICT_SUSPICIOUS: (
        "Exercise caution with this email. Do not click links or download "
        "attachments unless you verify the sender."
    ),
    VERDICT_PASS: (
        "This email appears to be safe, but always exercise caution with unexpected requests."
    ),
}

FeedbackProvider = Callable[[EmailEvent, str], Optional[FeedbackContext]]


def map_verdict(score: float, thresholds: Thresholds) -> str:
    """Score -> verdict. Pure function of the score and the thresholds."""
    if score >= thresholds.block:
        return VERDICT_BLOCK
    if score >= thresholds.quarantine:
        return VERDICT_QUARANTINE
    if score >= thresholds.suspicious:
        return VERDICT_SUSPICIOUS
    return VERDICT_PASS


def explain(signals: list[Signal], verdict: str) -> tuple[str, str]:
    """Human-readable explanation and recommendation for a verdict."""
    critical = [s for s in signals if s.severity == SEVERITY_CRITICAL]
    warning = [s for s in signals if s.severity == SEVERITY_WARNING]

    if verdict in (VERDICT_BLOCK, VERDICT_QUARANTINE):
        issues = [s.detail for s in critical[:3]] or [s.detail for s in warning[:3]]
        explanation = f"This email has been flagged due to: {'; '.join(issues)}"
    elif verdict == VERDICT_SUSPICIOUS:
        issues = [s.detail for s in (critical + warning)[:2]]
        explanation = f"This email shows some suspicious characteristics: {'; '.join(issues)}"
    else:
        explanation = "This email passed security checks."
    return explanation, RECOMMENDATIONS[verdict]


def estimate_llm_tokens(email: EmailEvent) -> int:
    text_length = len(email.subject or "") + len(email.body.text or "") + len(email.body.html or "")
    return math.ceil(text_length / 4) + PROMPT_TOKENS + RESPONSE_TOKENS


def _within(value: float, bounds) -> bool:
    """``low <= value <= high``; a malformed range never matches."""
    try:
        low, high = bounds
        return low <= value <= high
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed LLM gating range %r", bounds)
        return False


def _rescored(result: LayerResult, signals: list[Signal]) -> LayerResult:
    return replace(result, signals=signals, score=min(100, sum(s.score for s in signals)))


class DetectionPipeline:
    """
    Runs every configured layer on an email and produces an EmailVerdict.

    Collaborators are injected; any analyzer may be None, in which case its
    layer is reported as skipped. ``config_loader(tenant_id)`` supplies the
    tenant's DetectionConfig (see detection.config.load_detection_config).
    """

    def __init__(
        self,
        policy_engine=None,
        classifier=None,
        deterministic=None,
        reputation=None,
        ml=None,
        bec=None,
        llm=None,
        sandbox=None,
        behavioral=None,
        quota=None,
        config_loader: Optional[Callable[[str], DetectionConfig]] = None,
        feedback_provider: Optional[FeedbackProvider] = None,
    ):
        self.policy_engine = policy_engine
        self.classifier = classifier
        self.deterministic = deterministic
        self.reputation = reputation
        self.ml = ml
        self.bec = bec
        self.llm = llm
        self.sandbox = sandbox
        self.behavioral = behavioral
        self.quota = quota
        self.config_loader = config_loader or (lambda tenant_id: DetectionConfig())
        self.feedback_provider = feedback_provider

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def config_for(self, tenant_id: str, overrides: Optional[dict] = None) -> DetectionConfig:
        """Tenant config with per-call overrides; bad overrides are logged and ignored."""
        try:
            config = self.config_loader(tenant_id)
        except Exception:
            logger.exception("Failed to load detection config for tenant %s, using defaults", tenant_id)
            config = DetectionConfig()

        if overrides:
            try:
                config = config.merged(overrides)
            except (TypeError, ValueError) as exc:
                logger.error("Ignoring invalid config overrides for tenant %s: %s", tenant_id, exc)
        return config

    # ------------------------------------------------------------------
    # Layer execution
    # ------------------------------------------------------------------

    @staticmethod
    def _call(layer: str, fn: Callable[[], Any], timeout: float) -> tuple[Any, Optional[str], float]:
        """Run ``fn`` with a timeout. Returns (value, error, elapsed_ms)."""
        t0 = time.monotonic()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"layer-{layer}")
        try:
            future = executor.submit(fn)
            value = future.result(timeout=timeout)
            return value, None, (time.monotonic() - t0) * 1000
        except FuturesTimeoutError:
            elapsed_ms = (time.monotonic() - t0) * 1000
            logger.warning("Layer '%s' timed out after %.1fms", layer, elapsed_ms)
            return None, f"Timed out after {timeout:g}s", elapsed_ms
        except Exception as exc:
            elapsed_ms = (time.monotonic() - t0) * 1000
            logger.exception("Layer '%s' failed (%.1fms): %s", layer, elapsed_ms, exc)
            return None, f"Error: {exc}", elapsed_ms
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _run_layer(
        self,
        layer: str,
        analyzer,
        email: EmailEvent,
        prior_signals: list[Signal],
        timeout: float,
    ) -> LayerResult:
        if analyzer is None:
            return LayerResult.skipped_result(layer, f"No {layer} analyzer configured")

        snapshot = list(prior_signals)
        result, error, elapsed_ms = self._call(layer, lambda: analyzer.analyze(email, snapshot), timeout)
        if error:
            return LayerResult.skipped_result(layer, error, elapsed_ms)
        result.processing_time_ms = elapsed_ms
        logger.info(
            "Layer '%s': score=%s, %d signal(s) [%s] (%.1fms)",
            layer, result.score, len(result.signals),
            ", ".join(s.type for s in result.signals), elapsed_ms,
        )
        return result

    def _run_reputation(
        self,
        email: EmailEvent,
        prior_signals: list[Signal],
        timeout: float,
    ) -> tuple[LayerResult, Optional[ReputationContext]]:
        with_context = getattr(self.reputation, "analyze_with_context", None)
        if with_context is None:
            return self._run_layer(LAYER_REPUTATION, self.reputation, email, prior_signals, timeout), None

        snapshot = list(prior_signals)
        value, error, elapsed_ms = self._call(LAYER_REPUTATION, lambda: with_context(email, snapshot), timeout)
        if error:
            return LayerResult.skipped_result(LAYER_REPUTATION, error, elapsed_ms), None
        result, context = value
        result.processing_time_ms = elapsed_ms
        logger.info(
            "Layer 'reputation': score=%s, %d signal(s), known_sender=%s (%.1fms)",
            result.score, len(result.signals), context.is_known_sender, elapsed_ms,
        )
        return result, context

    @staticmethod
    def _filter(
        result: LayerResult,
        classification: Optional[Classification],
        context: Optional[ReputationContext],
    ) -> LayerResult:
        if result.skipped:
            return result
        return _rescored(result, filter_signals(result.signals, classification, context))

    @staticmethod
    def _llm_gate(
        config: DetectionConfig,
        deterministic: LayerResult,
        ml: LayerResult,
        bec: LayerResult,
    ) -> Optional[str]:
        """Why the LLM layer should run, or None when it is not needed.

        ``skip_llm`` only silences the deterministic / ML triggers; a
        suspected but unconfirmed BEC still goes to the LLM.
        """
        if not config.skip_llm:
            if not deterministic.skipped and _within(deterministic.score, config.llm_deterministic_range):
                return f"deterministic score {deterministic.score:g} is borderline"
            if not ml.skipped and _within(ml.confidence, config.invoke_llm_confidence_range):
                return f"ML confidence {ml.confidence:.2f} is uncertain"

        if not bec.skipped and bec.score >= BEC_SUSPECTED_SCORE and bec.confidence < BEC_CONFIRMED_CONFIDENCE:
            return "BEC suspected but not confirmed"
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze(
        self,
        email: EmailEvent,
        tenant_id: Optional[str] = None,
        config_overrides: Optional[dict] = None,
    ) -> EmailVerdict:
        """Analyze one email and return its verdict."""
        t0 = time.monotonic()
        tenant_id = tenant_id or email.tenant_id
        config = self.config_for(tenant_id, config_overrides)
        extra_signals: list[Signal] = []

        logger.info("Analyzing message %s for tenant %s", email.message_id, tenant_id)

        # --- 1. Policy ---
        policy = self._evaluate_policy(email, tenant_id)
        if policy is not None and policy.matched:
            if policy.action in ("allow", "block"):
                return self._policy_verdict(email, tenant_id, policy, t0)
            extra_signals.append(Signal(
                "policy_match", SEVERITY_INFO, 0,
                f"Policy \"{policy.policy_name}\" matched: {policy.reason}",
                metadata={"policy_id": policy.policy_id, "action": policy.action},
            ))

        # --- 2. Classification ---
        classification = self._classify(email)

        # --- 3. Layers ---
        layer_results: list[LayerResult] = []
        prior: list[Signal] = []

        deterministic_raw = self._run_layer(
            LAYER_DETERMINISTIC, self.deterministic, email, prior,
            config.layer_timeout_seconds(LAYER_DETERMINISTIC),
        )
        reputation, context = self._run_reputation(
            email, deterministic_raw.signals, config.layer_timeout_seconds(LAYER_REPUTATION),
        )
        deterministic = self._filter(deterministic_raw, classification, context)
        reputation = self._filter(reputation, classification, context)
        for result in (deterministic, reputation):
            layer_results.append(result)
            prior.extend(result.signals)

        ml = self._filter(
            self._run_layer(LAYER_ML, self.ml, email, prior, config.layer_timeout_seconds(LAYER_ML)),
            classification, context,
        )
        layer_results.append(ml)
        prior.extend(ml.signals)

        if classification is not None and classification.skip_bec_detection and classification.is_known_sender:
            bec = LayerResult.skipped_result(
                LAYER_BEC, f"Skipped for {classification.type} email from known sender",
            )
        else:
            bec = self._filter(
                self._run_layer(LAYER_BEC, self.bec, email, prior, config.layer_timeout_seconds(LAYER_BEC)),
                classification, context,
            )
        layer_results.append(bec)
        prior.extend(bec.signals)

        llm, quota_signal = self._run_llm(email, tenant_id, config, deterministic, ml, bec, prior)
        llm = self._filter(llm, classification, context)
        layer_results.append(llm)
        prior.extend(llm.signals)
        if quota_signal is not None:
            extra_signals.append(quota_signal)
        llm_tokens_used = None
        if not llm.skipped:
            llm_tokens_used = estimate_llm_tokens(email)

        if config.skip_sandbox:
            sandbox = LayerResult.skipped_result(LAYER_SANDBOX, "Disabled by configuration")
        elif not email.attachments:
            sandbox = LayerResult.skipped_result(LAYER_SANDBOX, "No attachments")
        else:
            timeout = config.sandbox_timeout_seconds()
            sandbox = self._filter(
                self._run_layer(LAYER_SANDBOX, self.sandbox, email, prior, timeout),
                classification, context,
            )
        layer_results.append(sandbox)
        prior.extend(sandbox.signals)

        behavioral = self._filter(
            self._run_layer(
                LAYER_BEHAVIORAL, self.behavioral, email, prior,
                config.layer_timeout_seconds(LAYER_BEHAVIORAL),
            ),
            classification, context,
        )
        layer_results.append(behavioral)

        # --- 4. Aggregation ---
        enhanced = calculate_enhanced_score(layer_results, ScoreOptions(
            classification=classification,
            sender=email.sender,
            sender_domain=email.sender_domain,
            sender_domain_age_days=email.sender_domain_age_days,
            thread=email.thread,
            attachments=list(email.attachments),
            feedback=self._feedback(email, tenant_id),
            enable_first_contact_amplification=config.enable_first_contact_amplification,
            enable_synergy_bonus=config.enable_synergy_bonus,
        ))
        score = enhanced.overall_score

        # --- 5. Trust dampening (sender reputation wins over classification) ---
        if context is not None and context.is_known_sender and context.trust_modifier < 1.0:
            original = score
            score = round_half_up(score * context.trust_modifier)
            extra_signals.append(Signal(
                "sender_trust_dampening", SEVERITY_INFO, 0,
                f"Score reduced by {round((1 - context.trust_modifier) * 100)}% due to sender reputation "
                f"({context.sender_name}, {context.sender_category})",
                metadata={"original_score": original, "adjusted_score": score,
                          "trust_modifier": context.trust_modifier},
            ))
        elif classification is not None and classification.threat_score_modifier < 1.0:
            original = score
            score = round_half_up(score * classification.threat_score_modifier)
            source = "known sender" if classification.is_known_sender else "likely legitimate source"
            extra_signals.append(Signal(
                "classification_dampening", SEVERITY_INFO, 0,
                f"Score reduced from {original} to {score} ({classification.type} email from {source})",
                metadata={"original_score": original, "adjusted_score": score,
                          "threat_score_modifier": classification.threat_score_modifier},
            ))

        # --- 6. Verdict ---
        verdict = map_verdict(score, config.thresholds)
        signals = dedupe_signals(enhanced.signals + extra_signals)
        explanation, recommendation = explain(signals, verdict)
        elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "Verdict for message %s: %s (score=%d, confidence=%.2f, %d signal(s), %.1fms)",
            email.message_id, verdict, score, enhanced.confidence, len(signals), elapsed_ms,
        )

        return EmailVerdict(
            message_id=email.message_id,
            tenant_id=tenant_id,
            verdict=verdict,
            overall_score=score,
            confidence=enhanced.confidence,
            signals=signals,
            layer_results=layer_results,
            explanation=explanation,
            recommendation=recommendation,
            processing_time_ms=elapsed_ms,
            policy_applied=policy if policy is not None and policy.matched else None,
            classification=classification,
            compound_patterns=list(enhanced.compound_patterns),
            llm_tokens_used=llm_tokens_used,
        )

    def quick_check(self, email: EmailEvent, tenant_id: Optional[str] = None) -> Optional[str]:
        """Deterministic layer only: 'pass', 'block', or None when a full analysis is needed."""
        config = self.config_for(tenant_id or email.tenant_id)
        result = self._run_layer(
            LAYER_DETERMINISTIC, self.deterministic, email, [],
            config.layer_timeout_seconds(LAYER_DETERMINISTIC),
        )
        if result.skipped:
            return None
        if result.score < QUICK_PASS_SCORE and result.confidence > QUICK_PASS_CONFIDENCE:
            return VERDICT_PASS
        if result.score >= QUICK_BLOCK_SCORE and any(s.severity == SEVERITY_CRITICAL for s in result.signals):
            return VERDICT_BLOCK
        return None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _evaluate_policy(self, email: EmailEvent, tenant_id: str) -> Optional[PolicyResult]:
        if self.policy_engine is None:
            return None
        try:
            return self.policy_engine.evaluate(email, tenant_id)
        except Exception:
            logger.exception("Policy evaluation failed for message %s, continuing", email.message_id)
            return None

    def _classify(self, email: EmailEvent) -> Optional[Classification]:
        if self.classifier is None:
            return None
        try:
            return self.classifier.classify(email)
        except Exception:
            logger.exception("Classification failed for message %s, continuing unclassified", email.message_id)
            return None

    def _feedback(self, email: EmailEvent, tenant_id: str) -> Optional[FeedbackContext]:
        if self.feedback_provider is None:
            return None
        try:
            return self.feedback_provider(email, tenant_id)
        except Exception:
            logger.exception("Feedback lookup failed for message %s", email.message_id)
            return None

    def _run_llm(
        self,
        email: EmailEvent,
        tenant_id: str,
        config: DetectionConfig,
        deterministic: LayerResult,
        ml: LayerResult,
        bec: LayerResult,
        prior: list[Signal],
    ) -> tuple[LayerResult, Optional[Signal]]:
        reason = self._llm_gate(config, deterministic, ml, bec)
        if reason is None and config.skip_llm:
            return LayerResult.skipped_result(LAYER_LLM, "Disabled by configuration (skip_llm)"), None
        if reason is None:
            return LayerResult.skipped_result(LAYER_LLM, "Not needed - sufficient confidence from prior layers"), None
        if self.llm is None:
            return LayerResult.skipped_result(LAYER_LLM, "No llm analyzer configured"), None

        quota_signal = None
        if self.quota is not None:
            limit = config.llm_daily_limit
            try:
                decision = self.quota.consume(tenant_id, limit)
            except Exception as exc:
                logger.warning("LLM quota check failed for tenant %s, allowing call: %s", tenant_id, exc)
                decision = None
                error = str(exc)
            else:
                error = decision.error

            if decision is not None and not decision.allowed:
                return LayerResult.skipped_result(
                    LAYER_LLM, f"Daily LLM quota exhausted ({decision.used}/{decision.limit})",
                ), None
            if error:
                quota_signal = Signal(
                    "llm_quota_unavailable", SEVERITY_WARNING, 0,
                    "LLM quota could not be checked; analysis ran without quota enforcement",
                    metadata={"error": error},
                )
            elif decision is not None and decision.warning:
                quota_signal = Signal(
                    "llm_quota_warning", SEVERITY_INFO, 0, decision.warning,
                    metadata={"used": decision.used, "limit": decision.limit},
                )

        logger.info("Invoking LLM for message %s: %s", email.message_id, reason)
        result = self._run_layer(LAYER_LLM, self.llm, email, prior, config.layer_timeout_seconds(LAYER_LLM))
        if not result.skipped:
            result.metadata.setdefault("invoked_because", reason)
        return result, quota_signal

    @staticmethod
    def _policy_verdict(email: EmailEvent, tenant_id: str, policy: PolicyResult, t0: float) -> EmailVerdict:
        if policy.action == "allow":
            verdict, score, severity = VERDICT_PASS, 0, SEVERITY_INFO
            explanation, recommendation = "This email was allowed by policy.", "Sender is on your allowlist."
        else:
            verdict, score, severity = VERDICT_BLOCK, 100, SEVERITY_CRITICAL
            explanation, recommendation = "This email was blocked by policy.", "Sender is on your blocklist."

        logger.info(
            "Message %s short-circuited by policy '%s' (%s)",
            email.message_id, policy.policy_name, policy.action,
        )
        return EmailVerdict(
            message_id=email.message_id,
            tenant_id=tenant_id,
            verdict=verdict,
            overall_score=score,
            confidence=1.0,
            signals=[Signal(
                "policy_match", severity, score,
                policy.reason or f"Matched policy '{policy.policy_name}'",
                metadata={"policy_id": policy.policy_id, "action": policy.action},
            )],
            explanation=explanation,
            recommendation=recommendation,
            processing_time_ms=(time.monotonic() - t0) * 1000,
            policy_applied=policy,
        )
