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
Score aggregation engine.

Turns the per-layer results of one email into a single 0-100 score:

    1. collect and deduplicate signals (highest score per type wins)
    2. first-contact amplification
    3. synergy bonus + compound patterns (not for marketing / known senders)
    4. weighted layer average (x0.4) + additive boosts
    5. dampening cascade, each step rounded:
         marketing/known x0.7 -> institutional x0.5 -> thread x0.6
         -> safe attachment x0.8 -> feedback x0.7 -> pattern FP x0.85
    6. clamp to 0..100

Everything here is a pure function of its inputs.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from detection.models import (
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    Classification,
    FeedbackContext,
    LayerResult,
    Signal,
    ThreadContext,
    clamp,
    round_half_up,
)
from detection.scoring import dampening, rules
from detection.scoring.amplification import (
    amplification_multiplier,
    amplify_first_contact_risk,
    calculate_synergy_bonus,
    has_first_contact,
    identify_compound_patterns,
    options_from_signals,
)


@dataclass
class ScoreOptions:
    """Context the engine needs beyond the layer results."""
    classification: Optional[Classification] = None
    sender: str = ""
    sender_domain: str = ""
    sender_domain_age_days: Optional[int] = None
    thread: Optional[ThreadContext] = None
    attachments: list = field(default_factory=list)
    feedback: Optional[FeedbackContext] = None
    enable_first_contact_amplification: bool = True
    enable_synergy_bonus: bool = True
    now: Optional[datetime] = None

    @property
    def is_marketing_or_known(self) -> bool:
        c = self.classification
        return c is not None and (c.type == "marketing" or c.is_known_sender)

    @property
    def is_known_sender(self) -> bool:
        return self.classification is not None and self.classification.is_known_sender


@dataclass
class EnhancedScore:
    overall_score: int
    confidence: float
    signals: list
    synergy_bonus: int = 0
    compound_patterns: list = field(default_factory=list)
    amplification_applied: bool = False
    critical_boost: int = 0
    flags: dict = field(default_factory=dict)


def dedupe_signals(signals: list[Signal]) -> list[Signal]:
    """Keep one signal per type, the highest-scoring; first-seen order."""
    by_type: dict[str, Signal] = {}
    for signal in signals:
        existing = by_type.get(signal.type)
        if existing is None or signal.score > existing.score:
            by_type[signal.type] = signal
    return list(by_type.values())


def weighted_layer_score(layer_results: list[LayerResult]) -> float:
    """Weight-renormalised mean of the layer scores."""
    weighted = 0.0
    total_weight = 0.0
    for result in layer_results:
        weight = rules.LAYER_WEIGHTS.get(result.layer, rules.DEFAULT_LAYER_WEIGHT)
        weighted += result.score * weight
        total_weight += weight
    return weighted / total_weight if total_weight > 0 else 0.0


def aggregate_confidence(layer_results: list[LayerResult]) -> float:
    present = {r.layer for r in layer_results}
    coverage = sum(1 for layer in rules.CORE_LAYERS if layer in present) / len(rules.CORE_LAYERS)
    if layer_results:
        average = sum(r.confidence for r in layer_results) / len(layer_results)
    else:
        average = 0.5
    return min(1.0, average * 0.7 + coverage * 0.3)


def calculate_enhanced_score(
    layer_results: list[LayerResult],
    options: Optional[ScoreOptions] = None,
) -> EnhancedScore:
    """Combine layer results into one score. Skipped layers are ignored."""
    options = options or ScoreOptions()
    layer_results = [r for r in layer_results if not r.skipped]

    signals = dedupe_signals([s for r in layer_results for s in r.signals])
    marketing_or_known = options.is_marketing_or_known

    # -- Amplification -------------------------------------------------------
    amplification_applied = False
    if options.enable_first_contact_amplification and has_first_contact(signals):
        amp_options = options_from_signals(signals, options.sender_domain_age_days)
        signals = amplify_first_contact_risk(signals, amp_options)
        amplification_applied = amplification_multiplier(amp_options) is not None

    # -- Synergy -------------------------------------------------------------
    synergy_bonus = 0
    compound_patterns: list[str] = []
    if options.enable_synergy_bonus and not marketing_or_known:
        synergy_bonus = calculate_synergy_bonus(signals)
        compound_patterns = identify_compound_patterns(signals)

    # -- Base score ----------------------------------------------------------
    critical_count = sum(1 for s in signals if s.severity == SEVERITY_CRITICAL)
    warning_count = sum(1 for s in signals if s.severity == SEVERITY_WARNING)
    critical_boost = min(rules.CRITICAL_BOOST_CAP, critical_count * rules.CRITICAL_BOOST_PER_SIGNAL)
    warning_boost = min(rules.WARNING_BOOST_CAP, warning_count * rules.WARNING_BOOST_PER_SIGNAL)
    signal_contribution = min(rules.SIGNAL_SCORE_CAP, sum(s.score for s in signals) * rules.SIGNAL_SCORE_FACTOR)
    amplification_bonus = rules.AMPLIFICATION_BONUS if amplification_applied else 0
    behavioral_bonus = (
        rules.BEHAVIORAL_BONUS
        if any(s.type in rules.BEHAVIORAL_ANOMALY_SIGNALS for s in signals)
        else 0
    )

    score = round_half_up(
        weighted_layer_score(layer_results) * rules.WEIGHTED_SCORE_FACTOR
        + critical_boost
        + warning_boost
        + signal_contribution
        + synergy_bonus
        + amplification_bonus
        + behavioral_bonus
    )

    # -- Dampening cascade ---------------------------------------------------
    flags = {
        "marketing_dampening": False,
        "institutional_dampening": False,
        "thread_dampening": False,
        "attachment_dampening": False,
        "feedback_dampening": False,
        "pattern_fp_dampening": False,
    }

    if marketing_or_known:
        score = round_half_up(score * rules.MARKETING_DAMPENING)
        flags["marketing_dampening"] = True

    if dampening.can_dampen_institutional(options.sender_domain, signals):
        score = round_half_up(score * rules.INSTITUTIONAL_DAMPENING)
        flags["institutional_dampening"] = True

    if dampening.can_dampen_thread(options.thread, options.sender, signals):
        score = round_half_up(score * rules.THREAD_DAMPENING)
        flags["thread_dampening"] = True

    if dampening.can_dampen_attachments(options.attachments, options.is_known_sender):
        score = round_half_up(score * rules.SAFE_ATTACHMENT_DAMPENING)
        flags["attachment_dampening"] = True

    if dampening.can_dampen_feedback(options.feedback, signals, options.now):
        score = round_half_up(score * rules.FEEDBACK_DAMPENING)
        flags["feedback_dampening"] = True

    if dampening.can_dampen_pattern_fp(options.feedback):
        score = round_half_up(score * rules.PATTERN_FP_DAMPENING)
        flags["pattern_fp_dampening"] = True

    return EnhancedScore(
        overall_score=int(clamp(score, 0, 100)),
        confidence=aggregate_confidence(layer_results),
        signals=signals,
        synergy_bonus=synergy_bonus,
        compound_patterns=compound_patterns,
        amplification_applied=amplification_applied,
        critical_boost=critical_boost,
        flags=flags,
    )
