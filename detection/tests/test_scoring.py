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

"""Tests for the score aggregation engine, amplification and dampening."""
from datetime import datetime, timedelta, timezone

import pytest

from detection.models import (
    Attachment,
    Classification,
    FeedbackContext,
    LayerResult,
    Signal,
    ThreadContext,
    round_half_up,
)
from detection.scoring import (
    AmplificationOptions,
    ScoreOptions,
    amplify_first_contact_risk,
    calculate_enhanced_score,
    calculate_synergy_bonus,
    identify_compound_patterns,
)
from detection.scoring.amplification import amplification_multiplier
from detection.scoring.engine import aggregate_confidence, dedupe_signals, weighted_layer_score


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _sig(type_, severity="warning", score=10, detail=""):
    return Signal(type=type_, severity=severity, score=score, detail=detail)


def _layer(layer="bec", score=40, confidence=0.8, signals=None):
    return LayerResult(layer=layer, score=score, confidence=confidence, signals=signals or [])


class TestRoundHalfUp:

    def test_half_rounds_up(self):
        assert round_half_up(20.5) == 21
        assert round_half_up(0.5) == 1

    def test_below_half_rounds_down(self):
        assert round_half_up(20.49) == 20


# ---------------------------------------------------------------------------
# Amplification
# ---------------------------------------------------------------------------

class TestAmplification:

    def _signals(self, score=30):
        return [
            _sig("first_contact", "warning", 10, "First email from this sender"),
            _sig("bec_wire_transfer_request", "critical", score, "Wire transfer request from CEO"),
        ]

    def test_new_domain_executive_financial_multiplier(self):
        options = AmplificationOptions(
            has_executive_title=True, has_financial_request=True, sender_domain_age_days=5,
        )
        assert amplification_multiplier(options) == 1.5

    def test_medium_age_domain_multiplier(self):
        assert amplification_multiplier(AmplificationOptions(sender_domain_age_days=100)) == 1.1

    def test_unknown_age_treated_as_new(self):
        assert amplification_multiplier(AmplificationOptions()) == 1.2

    def test_vip_adds_to_multiplier(self):
        options = AmplificationOptions(targeting_vip=True, sender_domain_age_days=10)
        assert amplification_multiplier(options) == 1.4

    def test_established_domain_not_amplified(self):
        signals = self._signals()
        options = AmplificationOptions(
            has_executive_title=True, has_financial_request=True, sender_domain_age_days=400,
        )
        result = amplify_first_contact_risk(signals, options)
        assert result == signals
        assert all(s.amplification is None for s in result)

    def test_amplifies_fraud_signals(self):
        options = AmplificationOptions(
            has_executive_title=True, has_financial_request=True, sender_domain_age_days=5,
        )
        result = amplify_first_contact_risk(self._signals(30), options)
        wire = next(s for s in result if s.type == "bec_wire_transfer_request")
        assert wire.score == 45
        assert wire.amplification.original_score == 30
        assert wire.amplification.multiplier == 1.5

    def test_first_contact_itself_not_amplified(self):
        options = AmplificationOptions(sender_domain_age_days=5)
        result = amplify_first_contact_risk(self._signals(), options)
        first = next(s for s in result if s.type == "first_contact")
        assert first.score == 10

    def test_amplified_score_capped_at_55(self):
        options = AmplificationOptions(
            has_executive_title=True, has_financial_request=True, sender_domain_age_days=5,
        )
        result = amplify_first_contact_risk(self._signals(40), options)
        wire = next(s for s in result if s.type == "bec_wire_transfer_request")
        assert wire.score == 55

    def test_score_above_cap_comes_down_to_cap(self):
        options = AmplificationOptions(sender_domain_age_days=5)
        result = amplify_first_contact_risk(self._signals(70), options)
        wire = next(s for s in result if s.type == "bec_wire_transfer_request")
        assert wire.score == 55
        assert wire.amplification.original_score == 70

    def test_summary_signal_for_executive_financial_new_domain(self):
        options = AmplificationOptions(
            has_executive_title=True, has_financial_request=True, sender_domain_age_days=5,
        )
        result = amplify_first_contact_risk(self._signals(), options)
        summary = [s for s in result if s.type == "first_contact_amplified"]
        assert len(summary) == 1
        assert summary[0].severity == "critical"
        assert summary[0].score == 15

    def test_no_summary_for_medium_age_domain(self):
        options = AmplificationOptions(
            has_executive_title=True, has_financial_request=True, sender_domain_age_days=90,
        )
        result = amplify_first_contact_risk(self._signals(), options)
        assert not any(s.type == "first_contact_amplified" for s in result)

    def test_without_first_contact_unchanged(self):
        signals = [_sig("bec_wire_transfer_request", "critical", 30)]
        result = amplify_first_contact_risk(signals, AmplificationOptions(sender_domain_age_days=1))
        assert result == signals

    def test_input_not_modified(self):
        signals = self._signals(30)
        amplify_first_contact_risk(signals, AmplificationOptions(sender_domain_age_days=5))
        assert signals[1].score == 30
        assert len(signals) == 2


# ---------------------------------------------------------------------------
# Synergy and compound patterns
# ---------------------------------------------------------------------------

class TestSynergy:

    def test_no_bonus_for_single_pattern(self):
        assert calculate_synergy_bonus([_sig("bec_detected")]) == 0

    @pytest.mark.parametrize("count, bonus", [(2, 4), (3, 6), (4, 8), (6, 8)])
    def test_tiers(self, count, bonus):
        signals = [_sig(f"warning_{i}") for i in range(count)]
        assert calculate_synergy_bonus(signals) == bonus

    def test_info_signals_outside_pattern_set_ignored(self):
        signals = [_sig("a", "info"), _sig("b", "info"), _sig("c", "info")]
        assert calculate_synergy_bonus(signals) == 0

    def test_attack_pattern_counts_even_at_info(self):
        signals = [_sig("homoglyph", "info"), _sig("first_contact", "info")]
        assert calculate_synergy_bonus(signals) == 4


class TestCompoundPatterns:

    def test_ceo_fraud(self):
        signals = [_sig("bec_impersonation"), _sig("bec_wire_transfer_request")]
        assert identify_compound_patterns(signals) == ["ceo_fraud"]

    def test_multiple_patterns_in_table_order(self):
        signals = [
            _sig("bec_impersonation"),
            _sig("bec_financial_risk"),
            _sig("bec_urgency_pressure"),
        ]
        assert identify_compound_patterns(signals) == [
            "ceo_fraud", "executive_impersonation", "bec_pressure_campaign",
        ]

    def test_required_alone_is_not_enough(self):
        assert identify_compound_patterns([_sig("credential_request")]) == []

    def test_credential_phishing(self):
        signals = [_sig("credential_request"), _sig("malicious_url")]
        assert identify_compound_patterns(signals) == ["credential_phishing"]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TestEngineBasics:

    def test_dedupe_keeps_highest_score(self):
        signals = [_sig("x", score=5), _sig("y", score=1), _sig("x", score=9)]
        result = dedupe_signals(signals)
        assert [s.type for s in result] == ["x", "y"]
        assert result[0].score == 9

    def test_weighted_score_renormalised(self):
        results = [_layer("deterministic", 80), _layer("reputation", 0)]
        # (80 * .25) / (.25 + .15)
        assert weighted_layer_score(results) == pytest.approx(50.0)

    def test_unknown_layer_gets_default_weight(self):
        assert weighted_layer_score([_layer("custom", 60)]) == pytest.approx(60.0)

    def test_no_layers(self):
        score = calculate_enhanced_score([])
        assert score.overall_score == 0
        assert score.confidence == pytest.approx(0.35)

    def test_confidence_blends_average_and_coverage(self):
        assert aggregate_confidence([_layer(confidence=0.8)]) == pytest.approx(0.635)

    def test_single_layer_score(self):
        # 40 * .4 + 2 (warning) + 10 * .25 = 20.5
        score = calculate_enhanced_score([_layer(signals=[_sig("x")])])
        assert score.overall_score == 21
        assert score.confidence == pytest.approx(0.635)

    def test_skipped_layers_ignored(self):
        results = [
            _layer(signals=[_sig("x")]),
            LayerResult.skipped_result("llm", "Timed out after 30s"),
        ]
        score = calculate_enhanced_score(results)
        assert score.overall_score == 21
        assert score.confidence == pytest.approx(0.635)

    def test_critical_boost_capped(self):
        signals = [_sig(f"c{i}", "critical", 0) for i in range(6)]
        score = calculate_enhanced_score([_layer(score=0, signals=signals)])
        assert score.critical_boost == 20

    def test_behavioral_bonus(self):
        plain = calculate_enhanced_score([_layer(score=0, signals=[_sig("x", "info", 0)])])
        anomaly = calculate_enhanced_score([_layer(score=0, signals=[_sig("behavioral_anomaly", "info", 0)])])
        assert anomaly.overall_score - plain.overall_score == 3

    def test_score_clamped_to_100(self):
        # 40 weighted + 20 critical + 10 warning + 30 signals + 8 synergy
        # + 8 amplification + 3 behavioral = 119 before the clamp
        signals = [_sig(f"bec_{i}", "critical", 50) for i in range(6)]
        signals += [_sig(f"warn_{i}", "warning", 10) for i in range(5)]
        signals += [
            _sig("first_contact", "warning", 10, "First email from this sender"),
            _sig("behavioral_anomaly", "warning", 10),
        ]
        score = calculate_enhanced_score(
            [_layer(score=100, signals=signals)], ScoreOptions(sender_domain_age_days=5),
        )
        assert score.amplification_applied
        assert score.overall_score == 100

    def test_amplification_bonus_applied(self):
        signals = [
            _sig("first_contact", "warning", 10, "First email from this sender"),
            _sig("bec_wire_transfer_request", "critical", 30, "Wire transfer request from CEO"),
        ]
        options = ScoreOptions(sender_domain_age_days=5)
        score = calculate_enhanced_score([_layer(signals=signals)], options)
        assert score.amplification_applied
        assert any(s.type == "first_contact_amplified" for s in score.signals)

    def test_amplification_can_be_disabled(self):
        signals = [
            _sig("first_contact", "warning", 10),
            _sig("bec_wire_transfer_request", "critical", 30, "Wire from CEO"),
        ]
        options = ScoreOptions(sender_domain_age_days=5, enable_first_contact_amplification=False)
        score = calculate_enhanced_score([_layer(signals=signals)], options)
        assert not score.amplification_applied
        wire = next(s for s in score.signals if s.type == "bec_wire_transfer_request")
        assert wire.score == 30

    def test_synergy_skipped_for_marketing(self):
        signals = [_sig("bec_impersonation"), _sig("bec_wire_transfer_request")]
        options = ScoreOptions(classification=Classification(type="marketing"))
        score = calculate_enhanced_score([_layer(signals=signals)], options)
        assert score.synergy_bonus == 0
        assert score.compound_patterns == []


class TestDampening:

    def _results(self, signals=None):
        return [_layer(signals=signals if signals is not None else [_sig("x")])]

    def test_marketing_dampening(self):
        options = ScoreOptions(classification=Classification(type="marketing"))
        score = calculate_enhanced_score(self._results(), options)
        # round(21 * 0.7) = 15
        assert score.overall_score == 15
        assert score.flags["marketing_dampening"]

    def test_institutional_dampening(self):
        options = ScoreOptions(sender_domain="irs.gov")
        score = calculate_enhanced_score(self._results(), options)
        assert score.overall_score == 11
        assert score.flags["institutional_dampening"]

    def test_institutional_not_dampened_when_spoofed(self):
        options = ScoreOptions(sender_domain="irs.gov")
        score = calculate_enhanced_score(self._results([_sig("homoglyph")]), options)
        assert not score.flags["institutional_dampening"]

    def test_thread_dampening(self):
        options = ScoreOptions(
            sender="alice@partner.com",
            thread=ThreadContext(is_reply=True, depth=2, previous_senders=["Alice@partner.com"]),
        )
        score = calculate_enhanced_score(self._results(), options)
        assert score.flags["thread_dampening"]
        assert score.overall_score == 13

    def test_new_participant_in_thread_not_dampened(self):
        options = ScoreOptions(
            sender="mallory@evil.com",
            thread=ThreadContext(is_reply=True, depth=2, previous_senders=["alice@partner.com"]),
        )
        score = calculate_enhanced_score(self._results(), options)
        assert not score.flags["thread_dampening"]

    def test_critical_bec_blocks_thread_dampening(self):
        options = ScoreOptions(
            sender="alice@partner.com",
            thread=ThreadContext(is_reply=True, depth=1, previous_senders=[]),
        )
        signals = [_sig("bec_wire_transfer_request", "critical", 30)]
        score = calculate_enhanced_score(self._results(signals), options)
        assert not score.flags["thread_dampening"]

    def test_attachment_dampening_needs_known_sender(self):
        attachments = [Attachment(name="report.pdf", content_type="application/pdf")]
        unknown = calculate_enhanced_score(self._results(), ScoreOptions(attachments=attachments))
        known = calculate_enhanced_score(
            self._results(),
            ScoreOptions(attachments=attachments, classification=Classification(is_known_sender=True)),
        )
        assert not unknown.flags["attachment_dampening"]
        assert known.flags["attachment_dampening"]

    def test_macro_attachment_not_dampened(self):
        attachments = [Attachment(name="a.docm", content_type="application/msword", has_macros=True)]
        options = ScoreOptions(attachments=attachments, classification=Classification(is_known_sender=True))
        score = calculate_enhanced_score(self._results(), options)
        assert not score.flags["attachment_dampening"]

    def test_recent_feedback_dampens(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        feedback = FeedbackContext(sender_marked_safe=True, last_feedback_at=now - timedelta(days=10))
        score = calculate_enhanced_score(self._results(), ScoreOptions(feedback=feedback, now=now))
        assert score.flags["feedback_dampening"]
        assert score.overall_score == 15

    def test_expired_feedback_ignored(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        feedback = FeedbackContext(sender_marked_safe=True, last_feedback_at=now - timedelta(days=100))
        score = calculate_enhanced_score(self._results(), ScoreOptions(feedback=feedback, now=now))
        assert not score.flags["feedback_dampening"]

    def test_pattern_fp_dampening(self):
        feedback = FeedbackContext(similar_pattern_count=25, similar_pattern_fp_rate=0.3)
        score = calculate_enhanced_score(self._results(), ScoreOptions(feedback=feedback))
        assert score.flags["pattern_fp_dampening"]
        assert score.overall_score == 18

    def test_pattern_fp_needs_samples(self):
        feedback = FeedbackContext(similar_pattern_count=5, similar_pattern_fp_rate=0.9)
        score = calculate_enhanced_score(self._results(), ScoreOptions(feedback=feedback))
        assert not score.flags["pattern_fp_dampening"]


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------

_NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)

_SCENARIOS = {
    "plain": (
        {"deterministic": [_sig("suspicious_url", "warning", 15)], "bec": []},
        ScoreOptions(),
    ),
    "institutional_sender": (
        {"deterministic": [_sig("spf", "warning", 10)], "reputation": [_sig("suspicious_domain", "warning", 20)]},
        ScoreOptions(sender_domain="irs.gov"),
    ),
    "thread_reply": (
        {"deterministic": [_sig("urgency_language", "warning", 10)], "bec": [_sig("bec_urgency_pressure", "warning", 10)]},
        ScoreOptions(
            sender="alice@partner.com",
            thread=ThreadContext(is_reply=True, depth=2, previous_senders=["alice@partner.com"]),
        ),
    ),
    "marked_safe": (
        {"deterministic": [_sig("return_path_mismatch", "warning", 10)]},
        ScoreOptions(
            feedback=FeedbackContext(sender_marked_safe=True, last_feedback_at=_NOW - timedelta(days=5)),
            now=_NOW,
        ),
    ),
    "known_marketing": (
        {"deterministic": [_sig("url_shortener", "warning", 10)], "reputation": []},
        ScoreOptions(classification=Classification(type="marketing", is_known_sender=True)),
    ),
    "first_contact_new_domain": (
        {"bec": [
            _sig("first_contact", "warning", 15, "First email from this sender"),
            _sig("bec_wire_transfer_request", "critical", 35, "Wire transfer request"),
        ]},
        ScoreOptions(sender_domain_age_days=5),
    ),
    "already_high": (
        {
            "deterministic": [_sig(f"d{i}", "critical", 25) for i in range(4)],
            "bec": [_sig(f"b{i}", "critical", 30) for i in range(3)],
        },
        ScoreOptions(),
    ),
}

_EXTRA_CRITICALS = [
    ("deterministic", _sig("homoglyph", "critical", 44, "Sender domain imitates PayPal")),
    ("bec", _sig("bec_impersonation", "critical", 40, "Executive impersonation: CEO")),
    ("bec", _sig("bec_financial_risk", "critical", 20, "Financial request for $45,000")),
    ("reputation", _sig("malicious_url", "critical", 40, "URL listed as malicious")),
    ("sandbox", _sig("executable_attachment", "critical", 40, "Executable attachment")),
]


# Every scenario reports the same four layers
_LAYERS = ("deterministic", "reputation", "bec", "sandbox")


def _layers(signals_by_layer):
    results = []
    for name in _LAYERS:
        signals = list(signals_by_layer.get(name, []))
        results.append(_layer(name, score=min(100, sum(s.score for s in signals)), signals=signals))
    return results


def _with_extra(signals_by_layer, layer, signal):
    extended = {name: list(signals) for name, signals in signals_by_layer.items()}
    extended.setdefault(layer, []).append(signal)
    return extended


class TestScoreInvariants:

    @pytest.mark.parametrize("scenario", sorted(_SCENARIOS))
    @pytest.mark.parametrize("layer, extra", _EXTRA_CRITICALS, ids=[s.type for _, s in _EXTRA_CRITICALS])
    def test_adding_critical_signal_never_lowers_score(self, scenario, layer, extra):
        signals_by_layer, options = _SCENARIOS[scenario]

        before = calculate_enhanced_score(_layers(signals_by_layer), options)
        after = calculate_enhanced_score(_layers(_with_extra(signals_by_layer, layer, extra)), options)

        assert after.overall_score >= before.overall_score
        assert 0 <= before.overall_score <= 100
        assert 0 <= after.overall_score <= 100

    def test_critical_signal_can_switch_off_dampening(self):
        signals_by_layer, options = _SCENARIOS["institutional_sender"]
        before = calculate_enhanced_score(_layers(signals_by_layer), options)
        after = calculate_enhanced_score(
            _layers(_with_extra(signals_by_layer, "deterministic", _EXTRA_CRITICALS[0][1])), options,
        )
        assert before.flags["institutional_dampening"]
        assert not after.flags["institutional_dampening"]
        assert after.overall_score > before.overall_score
