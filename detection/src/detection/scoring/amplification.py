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
First-contact amplification, synergy bonus and compound-pattern detection.

A first message from an unknown sender that also asks for money is far
riskier than either fact alone. Amplification raises the score of a fixed
set of fraud signals when a first-contact signal is present, scaled by how
new the sender domain is:

    domain age > 365 days   no amplification at all
    30..365 days            x1.1
    < 30 days / unknown     x1.2
    + 0.2 executive title targeted, + 0.1 financial request, + 0.2 VIP targeted

Amplified scores are capped at 55 and never drop below the original.
"""
from dataclasses import dataclass
from typing import Optional

from detection.models import SEVERITY_CRITICAL, SEVERITY_WARNING, AmplificationInfo, Signal, round_half_up
from detection.scoring import rules


@dataclass(frozen=True)
class AmplificationOptions:
    has_executive_title: bool = False
    has_financial_request: bool = False
    targeting_vip: bool = False
    sender_domain_age_days: Optional[int] = None


def has_first_contact(signals: list[Signal]) -> bool:
    return any(s.type in rules.FIRST_CONTACT_SIGNALS for s in signals)


def options_from_signals(signals: list[Signal], sender_domain_age_days: Optional[int]) -> AmplificationOptions:
    """Derive the amplification context from the evidence itself."""
    def _mentions_executive(signal: Signal) -> bool:
        detail = (signal.detail or "").lower()
        return any(word in detail for word in rules.EXECUTIVE_TITLE_WORDS)

    return AmplificationOptions(
        has_executive_title=any(_mentions_executive(s) for s in signals),
        has_financial_request=any(s.type in rules.FINANCIAL_REQUEST_SIGNALS for s in signals),
        targeting_vip=any(s.type in rules.VIP_SIGNALS for s in signals),
        sender_domain_age_days=sender_domain_age_days,
    )


def amplification_multiplier(options: AmplificationOptions) -> Optional[float]:
    """Return the multiplier, or None when the domain is established."""
    age = options.sender_domain_age_days
    if age is not None and age > rules.ESTABLISHED_DOMAIN_DAYS:
        return None

    if age is not None and age >= rules.NEW_DOMAIN_DAYS:
        multiplier = rules.MEDIUM_DOMAIN_MULTIPLIER
    else:
        multiplier = rules.NEW_DOMAIN_MULTIPLIER

    if options.has_executive_title:
        multiplier += rules.EXECUTIVE_MULTIPLIER
    if options.has_financial_request:
        multiplier += rules.FINANCIAL_MULTIPLIER
    if options.targeting_vip:
        multiplier += rules.VIP_MULTIPLIER
    return round(multiplier, 2)


def amplify_first_contact_risk(
    signals: list[Signal],
    options: Optional[AmplificationOptions] = None,
) -> list[Signal]:
    """Return a new signal list with first-contact amplification applied.

    The input list and its signals are never modified. Without a
    first-contact signal, or for an established domain, the signals come
    back unchanged and no summary signal is added.
    """
    options = options or AmplificationOptions()
    if not signals or not has_first_contact(signals):
        return list(signals)

    multiplier = amplification_multiplier(options)
    if multiplier is None:
        return list(signals)

    amplified: list[Signal] = []
    for signal in signals:
        if signal.type in rules.AMPLIFIABLE_SIGNALS:
            amplified.append(signal.with_score(
                min(rules.AMPLIFIED_SCORE_CAP, round_half_up(signal.score * multiplier)),
                AmplificationInfo(original_score=signal.score, multiplier=multiplier),
            ))
        else:
            amplified.append(signal)

    age = options.sender_domain_age_days
    if (
        options.has_executive_title
        and options.has_financial_request
        and (age is None or age < rules.NEW_DOMAIN_DAYS)
    ):
        amplified.append(Signal(
            type="first_contact_amplified",
            severity=SEVERITY_CRITICAL,
            score=rules.AMPLIFIED_SUMMARY_SCORE,
            detail="First-contact amplification triggered: executive title + financial request",
            metadata={
                "multiplier": multiplier,
                "targeting_vip": options.targeting_vip,
                "domain_age_days": age,
            },
        ))

    return amplified


def calculate_synergy_bonus(signals: list[Signal]) -> int:
    """Bonus for several distinct attack patterns showing up together (max 8)."""
    patterns = {
        s.type for s in signals
        if s.type in rules.ATTACK_PATTERN_SIGNALS
        or s.severity in (SEVERITY_WARNING, SEVERITY_CRITICAL)
    }
    for min_count, bonus in rules.SYNERGY_TIERS:
        if len(patterns) >= min_count:
            return min(bonus, rules.SYNERGY_CAP)
    return 0


def identify_compound_patterns(signals: list[Signal]) -> list[str]:
    """Names of every compound pattern the signal set satisfies, in table order."""
    types = {s.type for s in signals}
    return [p.name for p in rules.COMPOUND_PATTERNS if p.matches(types)]
