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

"""Tests for the detection pipeline: analyzers, policy, classifier and quota faked."""
import time
from unittest.mock import MagicMock

import pytest

from detection.analyzers._base import BaseAnalyzer
from detection.config import DetectionConfig, Thresholds
from detection.models import (
    Attachment,
    Classification,
    EmailAddress,
    EmailBody,
    EmailEvent,
    FeedbackContext,
    PolicyResult,
    ReputationContext,
    Signal,
    round_half_up,
)
from detection.pipeline import DetectionPipeline, estimate_llm_tokens, explain, map_verdict
from detection.quota import QuotaDecision


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_email(**kwargs) -> EmailEvent:
    defaults = {
        "message_id": "pipe-test-001",
        "user_id": "user@company.com",
        "tenant_id": "tenant-001",
        "received_at": "2026-02-10T15:00:00Z",
        "sender": "sender@example.com",
        "sender_name": "Test Sender",
        "to": [EmailAddress(address="finance@company.com", name="Finance")],
        "subject": "Test email",
        "body": EmailBody(text="Hello"),
    }
    defaults.update(kwargs)
    return EmailEvent(**defaults)


class _FakeAnalyzer(BaseAnalyzer):
    def __init__(self, layer, signals=(), confidence=0.9, delay=0.0, error=None):
        self.layer = layer
        self.signals = list(signals)
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.calls = []

    def analyze(self, email, prior_signals=None):
        self.calls.append(list(prior_signals or []))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result(self.signals, confidence=self.confidence)


class _FakeReputation(_FakeAnalyzer):
    def __init__(self, context, **kwargs):
        super().__init__("reputation", **kwargs)
        self.context = context

    def analyze_with_context(self, email, prior_signals=None):
        return self.analyze(email, prior_signals), self.context


def _sig(type_, severity="warning", score=10, detail=""):
    return Signal(type=type_, severity=severity, score=score, detail=detail or type_)


def _policy(action, name="Test policy"):
    engine = MagicMock()
    engine.evaluate.return_value = PolicyResult(
        matched=True, action=action, policy_id="p-1", policy_name=name, reason=f"Sender matched {action} rule",
    )
    return engine


def _layer(verdict, name):
    return next(r for r in verdict.layer_results if r.layer == name)


# ---------------------------------------------------------------------------
# Verdict mapping and explanation
# ---------------------------------------------------------------------------

class TestMapVerdict:

    @pytest.mark.parametrize("score, expected", [
        (0, "pass"), (54, "pass"), (55, "suspicious"), (72, "suspicious"),
        (73, "quarantine"), (84, "quarantine"), (85, "block"), (100, "block"),
    ])
    def test_default_thresholds(self, score, expected):
        assert map_verdict(score, Thresholds()) == expected

    def test_custom_thresholds(self):
        assert map_verdict(50, Thresholds(suspicious=50)) == "suspicious"


class TestExplain:

    def test_block_lists_critical_details(self):
        signals = [_sig("a", "critical", detail="First"), _sig("b", "warning", detail="Second")]
        explanation, recommendation = explain(signals, "block")
        assert explanation == "This email has been flagged due to: First"
        assert "blocked" in recommendation

    def test_quarantine_falls_back_to_warnings(self):
        signals = [_sig("a", detail="One"), _sig("b", detail="Two")]
        explanation, _ = explain(signals, "quarantine")
        assert explanation == "This email has been flagged due to: One; Two"

    def test_suspicious_lists_two(self):
        signals = [_sig(str(i), detail=f"d{i}") for i in range(4)]
        explanation, _ = explain(signals, "suspicious")
        assert explanation == "This email shows some suspicious characteristics: d0; d1"

    def test_pass(self):
        assert explain([], "pass")[0] == "This email passed security checks."


def test_estimate_llm_tokens():
    email = _make_email(subject="Test email", body=EmailBody(text="Hello"))
    # ceil(15 / 4) + 500 + 300
    assert estimate_llm_tokens(email) == 804


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

class TestPolicy:

    def test_allow_short_circuits(self):
        deterministic = _FakeAnalyzer("deterministic", [_sig("malware", "critical", 90)])
        pipeline = DetectionPipeline(policy_engine=_policy("allow"), deterministic=deterministic)

        verdict = pipeline.analyze(_make_email())

        assert verdict.verdict == "pass"
        assert verdict.overall_score == 0
        assert verdict.confidence == 1.0
        assert verdict.policy_applied.action == "allow"
        assert verdict.layer_results == []
        assert deterministic.calls == []
        assert verdict.explanation == "This email was allowed by policy."

    def test_block_short_circuits(self):
        pipeline = DetectionPipeline(policy_engine=_policy("block"))
        verdict = pipeline.analyze(_make_email())

        assert verdict.verdict == "block"
        assert verdict.overall_score == 100
        assert verdict.signals[0].type == "policy_match"
        assert verdict.signals[0].severity == "critical"

    def test_tag_policy_noted_and_analysis_continues(self):
        deterministic = _FakeAnalyzer("deterministic")
        pipeline = DetectionPipeline(policy_engine=_policy("tag", "Tag invoices"), deterministic=deterministic)

        verdict = pipeline.analyze(_make_email())

        assert len(deterministic.calls) == 1
        match = next(s for s in verdict.signals if s.type == "policy_match")
        assert match.severity == "info"
        assert "Tag invoices" in match.detail
        assert verdict.policy_applied.action == "tag"

    def test_policy_engine_error_does_not_fail_analysis(self):
        engine = MagicMock()
        engine.evaluate.side_effect = RuntimeError("bad policy store")
        verdict = DetectionPipeline(policy_engine=engine).analyze(_make_email())
        assert verdict.verdict == "pass"
        assert verdict.policy_applied is None


# ---------------------------------------------------------------------------
# Layer execution
# ---------------------------------------------------------------------------

class TestLayers:

    def test_all_layers_reported_in_order(self):
        verdict = DetectionPipeline().analyze(_make_email())
        assert [r.layer for r in verdict.layer_results] == [
            "deterministic", "reputation", "ml", "bec", "llm", "sandbox", "behavioral",
        ]
        assert all(r.skipped for r in verdict.layer_results)
        assert verdict.verdict == "pass"

    def test_missing_analyzer_reason(self):
        verdict = DetectionPipeline().analyze(_make_email())
        assert _layer(verdict, "ml").skip_reason == "No ml analyzer configured"

    def test_failing_analyzer_becomes_skipped(self):
        pipeline = DetectionPipeline(bec=_FakeAnalyzer("bec", error=RuntimeError("boom")))
        verdict = pipeline.analyze(_make_email())
        bec = _layer(verdict, "bec")
        assert bec.skipped
        assert bec.skip_reason == "Error: boom"

    def test_slow_analyzer_times_out(self):
        pipeline = DetectionPipeline(deterministic=_FakeAnalyzer("deterministic", delay=0.5))
        verdict = pipeline.analyze(
            _make_email(), config_overrides={"layer_timeouts_ms": {"deterministic": 50}},
        )
        deterministic = _layer(verdict, "deterministic")
        assert deterministic.skipped
        assert deterministic.skip_reason == "Timed out after 0.05s"

    def test_prior_signals_passed_in_order(self):
        deterministic = _FakeAnalyzer("deterministic", [_sig("spf_fail")])
        bec = _FakeAnalyzer("bec")
        DetectionPipeline(deterministic=deterministic, bec=bec).analyze(_make_email())
        assert [s.type for s in bec.calls[0]] == ["spf_fail"]

    def test_layer_score_recomputed_from_signals(self):
        deterministic = _FakeAnalyzer("deterministic", [_sig("a", score=12), _sig("b", score=8)])
        verdict = DetectionPipeline(deterministic=deterministic).analyze(_make_email())
        assert _layer(verdict, "deterministic").score == 20

    def test_sandbox_skipped_without_attachments(self):
        sandbox = _FakeAnalyzer("sandbox")
        verdict = DetectionPipeline(sandbox=sandbox).analyze(_make_email())
        assert _layer(verdict, "sandbox").skip_reason == "No attachments"
        assert sandbox.calls == []

    def test_sandbox_disabled_by_config(self):
        sandbox = _FakeAnalyzer("sandbox")
        email = _make_email(attachments=[Attachment(name="a.pdf", content_type="application/pdf")])
        verdict = DetectionPipeline(sandbox=sandbox).analyze(email, config_overrides={"skip_sandbox": True})
        assert _layer(verdict, "sandbox").skip_reason == "Disabled by configuration"

    def test_sandbox_runs_with_attachments(self):
        sandbox = _FakeAnalyzer("sandbox")
        email = _make_email(attachments=[Attachment(name="a.pdf", content_type="application/pdf")])
        verdict = DetectionPipeline(sandbox=sandbox).analyze(email)
        assert not _layer(verdict, "sandbox").skipped

    def test_bec_skipped_for_known_marketing_sender(self):
        classifier = MagicMock()
        classifier.classify.return_value = Classification(
            type="marketing", is_known_sender=True, skip_bec_detection=True,
        )
        bec = _FakeAnalyzer("bec")
        verdict = DetectionPipeline(classifier=classifier, bec=bec).analyze(_make_email())
        assert _layer(verdict, "bec").skip_reason == "Skipped for marketing email from known sender"
        assert bec.calls == []

    def test_invalid_overrides_ignored(self):
        verdict = DetectionPipeline().analyze(_make_email(), config_overrides={"no_such_knob": 1})
        assert verdict.verdict == "pass"

    @pytest.mark.parametrize("overrides", [
        {"layer_timeouts_ms": {"deterministic": None}},
        {"layer_timeouts_ms": {"deterministic": "fast"}},
        {"layer_timeouts_ms": [5000]},
        {"llm_deterministic_range": [30]},
        {"invoke_llm_confidence_range": "0.4-0.7"},
        {"sandbox_timeout_ms": -1},
    ])
    def test_malformed_overrides_fall_back_to_tenant_config(self, overrides):
        deterministic = _FakeAnalyzer("deterministic", [_sig("suspicious_url", score=40)])
        llm = _FakeAnalyzer("llm")
        email = _make_email(attachments=[Attachment(name="a.pdf", content_type="application/pdf")])

        verdict = DetectionPipeline(deterministic=deterministic, llm=llm).analyze(
            email, config_overrides=overrides,
        )

        assert not _layer(verdict, "deterministic").skipped
        assert "borderline" in _layer(verdict, "llm").metadata["invoked_because"]

    def test_malformed_loaded_config_does_not_raise(self):
        config = DetectionConfig(
            layer_timeouts_ms={"deterministic": None},
            llm_deterministic_range=(30,),
        )
        deterministic = _FakeAnalyzer("deterministic", [_sig("suspicious_url", score=40)])
        pipeline = DetectionPipeline(deterministic=deterministic, config_loader=lambda tenant_id: config)

        verdict = pipeline.analyze(_make_email())

        assert _layer(verdict, "deterministic").score == 40
        assert _layer(verdict, "llm").skipped


# ---------------------------------------------------------------------------
# LLM gating and quota
# ---------------------------------------------------------------------------

class TestLLMGating:

    def _borderline(self):
        return _FakeAnalyzer("deterministic", [_sig("suspicious_url", score=40)])

    def test_not_invoked_when_confident(self):
        llm = _FakeAnalyzer("llm")
        verdict = DetectionPipeline(llm=llm).analyze(_make_email())
        assert _layer(verdict, "llm").skip_reason == "Not needed - sufficient confidence from prior layers"
        assert llm.calls == []
        assert verdict.llm_tokens_used is None

    def test_invoked_for_borderline_deterministic_score(self):
        llm = _FakeAnalyzer("llm")
        verdict = DetectionPipeline(deterministic=self._borderline(), llm=llm).analyze(_make_email())
        result = _layer(verdict, "llm")
        assert not result.skipped
        assert "borderline" in result.metadata["invoked_because"]
        assert verdict.llm_tokens_used == 804

    def test_invoked_for_uncertain_ml(self):
        llm = _FakeAnalyzer("llm")
        ml = _FakeAnalyzer("ml", confidence=0.5)
        verdict = DetectionPipeline(ml=ml, llm=llm).analyze(_make_email())
        assert "ML confidence" in _layer(verdict, "llm").metadata["invoked_because"]

    def test_invoked_for_unconfirmed_bec(self):
        llm = _FakeAnalyzer("llm")
        bec = _FakeAnalyzer("bec", [_sig("bec_urgency_pressure", score=35)], confidence=0.6)
        verdict = DetectionPipeline(bec=bec, llm=llm).analyze(_make_email())
        assert _layer(verdict, "llm").metadata["invoked_because"] == "BEC suspected but not confirmed"

    def test_skip_llm_config(self):
        llm = _FakeAnalyzer("llm")
        ml = _FakeAnalyzer("ml", confidence=0.5)
        pipeline = DetectionPipeline(deterministic=self._borderline(), ml=ml, llm=llm)
        verdict = pipeline.analyze(_make_email(), config_overrides={"skip_llm": True})
        assert _layer(verdict, "llm").skip_reason == "Disabled by configuration (skip_llm)"
        assert llm.calls == []

    def test_skip_llm_still_checks_unconfirmed_bec(self):
        llm = _FakeAnalyzer("llm")
        bec = _FakeAnalyzer("bec", [_sig("bec_urgency_pressure", score=35)], confidence=0.5)
        pipeline = DetectionPipeline(deterministic=self._borderline(), bec=bec, llm=llm)

        verdict = pipeline.analyze(_make_email(), config_overrides={"skip_llm": True})

        assert len(llm.calls) == 1
        assert _layer(verdict, "llm").metadata["invoked_because"] == "BEC suspected but not confirmed"

    def test_quota_exhausted(self):
        quota = MagicMock()
        quota.consume.return_value = QuotaDecision(allowed=False, used=101, limit=100)
        llm = _FakeAnalyzer("llm")
        pipeline = DetectionPipeline(deterministic=self._borderline(), llm=llm, quota=quota)

        verdict = pipeline.analyze(_make_email())

        assert _layer(verdict, "llm").skip_reason == "Daily LLM quota exhausted (101/100)"
        assert llm.calls == []
        quota.consume.assert_called_once_with("tenant-001", 100)

    def test_quota_limit_from_plan(self):
        quota = MagicMock()
        quota.consume.return_value = QuotaDecision(allowed=True, used=1, limit=500)
        pipeline = DetectionPipeline(
            deterministic=self._borderline(), llm=_FakeAnalyzer("llm"), quota=quota,
        )
        pipeline.analyze(_make_email(), config_overrides={"plan": "pro"})
        quota.consume.assert_called_once_with("tenant-001", 500)

    def test_quota_usage_warning_surfaced(self):
        quota = MagicMock()
        quota.consume.return_value = QuotaDecision(
            allowed=True, used=85, limit=100, warning="LLM usage at 85% of daily limit (85/100)",
        )
        pipeline = DetectionPipeline(deterministic=self._borderline(), llm=_FakeAnalyzer("llm"), quota=quota)

        verdict = pipeline.analyze(_make_email())

        notice = next(s for s in verdict.signals if s.type == "llm_quota_warning")
        assert notice.severity == "info"
        assert notice.score == 0
        assert notice.detail == "LLM usage at 85% of daily limit (85/100)"
        assert notice.metadata == {"used": 85, "limit": 100}

    def test_no_quota_warning_below_threshold(self):
        quota = MagicMock()
        quota.consume.return_value = QuotaDecision(allowed=True, used=3, limit=100)
        pipeline = DetectionPipeline(deterministic=self._borderline(), llm=_FakeAnalyzer("llm"), quota=quota)
        verdict = pipeline.analyze(_make_email())
        assert not any(s.type == "llm_quota_warning" for s in verdict.signals)

    def test_quota_failure_fails_open_with_warning(self):
        quota = MagicMock()
        quota.consume.side_effect = RuntimeError("redis down")
        llm = _FakeAnalyzer("llm")
        pipeline = DetectionPipeline(deterministic=self._borderline(), llm=llm, quota=quota)

        verdict = pipeline.analyze(_make_email())

        assert len(llm.calls) == 1
        warning = next(s for s in verdict.signals if s.type == "llm_quota_unavailable")
        assert warning.severity == "warning"
        assert warning.score == 0


# ---------------------------------------------------------------------------
# Dampening applied by the pipeline
# ---------------------------------------------------------------------------

class TestTrustDampening:

    def test_known_sender_trust_modifier(self):
        context = ReputationContext(
            trust_modifier=0.5, is_known_sender=True, sender_name="Acme Payroll", sender_category="trusted",
        )
        deterministic = _FakeAnalyzer("deterministic", [_sig("x", score=20)])
        pipeline = DetectionPipeline(deterministic=deterministic, reputation=_FakeReputation(context))

        verdict = pipeline.analyze(_make_email())

        signal = next(s for s in verdict.signals if s.type == "sender_trust_dampening")
        assert signal.metadata["adjusted_score"] == round_half_up(signal.metadata["original_score"] * 0.5)
        assert verdict.overall_score == signal.metadata["adjusted_score"]
        assert "50%" in signal.detail

    def test_classification_modifier(self):
        classifier = MagicMock()
        classifier.classify.return_value = Classification(type="transactional", threat_score_modifier=0.8)
        deterministic = _FakeAnalyzer("deterministic", [_sig("x", score=20)])
        pipeline = DetectionPipeline(classifier=classifier, deterministic=deterministic)

        verdict = pipeline.analyze(_make_email())

        signal = next(s for s in verdict.signals if s.type == "classification_dampening")
        assert signal.metadata["adjusted_score"] == round_half_up(signal.metadata["original_score"] * 0.8)
        assert "transactional" in signal.detail

    def test_no_dampening_signal_at_full_trust(self):
        verdict = DetectionPipeline(deterministic=_FakeAnalyzer("deterministic", [_sig("x")])).analyze(_make_email())
        types = {s.type for s in verdict.signals}
        assert "sender_trust_dampening" not in types
        assert "classification_dampening" not in types

    def test_feedback_provider_used(self):
        deterministic = _FakeAnalyzer("deterministic", [_sig("x", score=20)])
        plain = DetectionPipeline(deterministic=deterministic).analyze(_make_email())
        safe = DetectionPipeline(
            deterministic=deterministic,
            feedback_provider=lambda email, tenant: FeedbackContext(sender_marked_safe=True),
        ).analyze(_make_email())
        assert safe.overall_score == round_half_up(plain.overall_score * 0.7)

    def test_feedback_provider_error_ignored(self):
        def broken(email, tenant):
            raise RuntimeError("feedback store down")

        verdict = DetectionPipeline(feedback_provider=broken).analyze(_make_email())
        assert verdict.verdict == "pass"


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

class TestEndToEnd:

    def test_first_contact_executive_wire_request_blocked(self):
        email = _make_email(
            sender="john.smith@ceo-payments.net",
            sender_name="John Smith, CEO",
            subject="Urgent wire",
            body=EmailBody(text="Please wire $45,000 to the account below today."),
            sender_domain_age_days=5,
        )
        deterministic = _FakeAnalyzer("deterministic", [
            _sig("display_name_spoof", "critical", 25, "Display name claims an executive title"),
        ])
        bec = _FakeAnalyzer("bec", [
            _sig("first_contact", "warning", 10, "First email from this sender"),
            _sig("bec_impersonation", "critical", 25, "Executive impersonation: CEO"),
            _sig("bec_wire_transfer_request", "critical", 30, "Wire transfer request for $45,000"),
            _sig("bec_urgency_pressure", "warning", 10, "Urgency pressure"),
        ])

        verdict = DetectionPipeline(deterministic=deterministic, bec=bec).analyze(email)

        wire = next(s for s in verdict.signals if s.type == "bec_wire_transfer_request")
        assert wire.amplification.multiplier == 1.5
        assert wire.score == 45
        assert any(s.type == "first_contact_amplified" for s in verdict.signals)
        assert "ceo_fraud" in verdict.compound_patterns
        assert verdict.overall_score == 89
        assert verdict.verdict == "block"
        assert verdict.confidence == pytest.approx(0.78)
        assert verdict.explanation.startswith("This email has been flagged due to: ")

    def test_verdict_serialises(self):
        verdict = DetectionPipeline(deterministic=_FakeAnalyzer("deterministic", [_sig("x")])).analyze(_make_email())
        data = verdict.to_dict()
        assert data["message_id"] == "pipe-test-001"
        assert data["tenant_id"] == "tenant-001"
        assert len(data["layer_results"]) == 7


# ---------------------------------------------------------------------------
# quick_check
# ---------------------------------------------------------------------------

class TestQuickCheck:

    def test_clean_and_confident_passes(self):
        pipeline = DetectionPipeline(deterministic=_FakeAnalyzer("deterministic", confidence=0.9))
        assert pipeline.quick_check(_make_email()) == "pass"

    def test_high_score_with_critical_blocks(self):
        deterministic = _FakeAnalyzer("deterministic", [_sig("malware_hash", "critical", 85)])
        assert DetectionPipeline(deterministic=deterministic).quick_check(_make_email()) == "block"

    def test_middle_ground_needs_full_analysis(self):
        deterministic = _FakeAnalyzer("deterministic", [_sig("x", score=40)])
        assert DetectionPipeline(deterministic=deterministic).quick_check(_make_email()) is None

    def test_no_deterministic_analyzer(self):
        assert DetectionPipeline().quick_check(_make_email()) is None
