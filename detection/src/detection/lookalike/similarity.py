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
String-similarity detectors for brand lookalikes.

Each detector compares the *base label* of a domain ("paypa1" for
"paypa1.com") against a brand's base label and returns a confidence, or
None when it does not fire.

    homoglyph  same length, every differing char is a registered substitute
    typosquat  edit distance 1 or 2 (brands of 4+ chars)
    cousin     brand plus a known affix, or brand embedded in a longer label
"""
from typing import Optional

from detection.lookalike.brands import COUSIN_AFFIXES, HOMOGLYPHS

HOMOGLYPH_BASE_CONFIDENCE = 0.9
HOMOGLYPH_STEP = 0.05
TYPOSQUAT_CONFIDENCE = {1: 0.85, 2: 0.70}
TYPOSQUAT_MIN_BRAND_LENGTH = 4
COUSIN_AFFIX_CONFIDENCE = 0.75
COUSIN_CONTAINS_CONFIDENCE = 0.65
COUSIN_MIN_EXTRA_CHARS = 3


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def is_homoglyph(test_char: str, target_char: str) -> bool:
    """True if ``test_char`` is a registered look-alike of ``target_char``."""
    target = target_char.lower()
    if test_char.lower() == target:
        return False
    substitutes = HOMOGLYPHS.get(target, ())
    return test_char in substitutes or test_char.lower() in substitutes


def homoglyph_substitutions(test: str, target: str) -> Optional[int]:
    """Number of homoglyph substitutions, or None if any difference isn't one."""
    if len(test) != len(target):
        return None
    count = 0
    for test_char, target_char in zip(test, target):
        if test_char == target_char:
            continue
        if not is_homoglyph(test_char, target_char):
            return None
        count += 1
    return count or None


def homoglyph_confidence(test: str, target: str) -> Optional[float]:
    count = homoglyph_substitutions(test, target)
    if count is None:
        return None
    return round(HOMOGLYPH_BASE_CONFIDENCE - (count - 1) * HOMOGLYPH_STEP, 4)


def typosquat_confidence(test: str, target: str) -> Optional[float]:
    if len(target) < TYPOSQUAT_MIN_BRAND_LENGTH:
        return None
    return TYPOSQUAT_CONFIDENCE.get(levenshtein(test, target))


def cousin_confidence(test: str, target: str) -> Optional[float]:
    for affix in COUSIN_AFFIXES:
        candidate = target + affix if affix.startswith("-") else affix + target
        if levenshtein(test, candidate) <= 1:
            return COUSIN_AFFIX_CONFIDENCE

    if target in test and len(test) >= len(target) + COUSIN_MIN_EXTRA_CHARS:
        return COUSIN_CONTAINS_CONFIDENCE
    return None


def is_similar(part: str, target: str) -> bool:
    """Loose match used to find the brand-like label of a hyphenated domain."""
    if part == target:
        return True
    if len(part) < 2 or len(target) < 2:
        return False
    if homoglyph_substitutions(part, target) is not None:
        return True
    return levenshtein(part, target) <= max(1, len(target) // 4)


def extract_affix(attacker_base: str, target_base: str) -> str:
    """Reduce an attacker label to its reusable affix.

    "secure-paypal" -> "secure-", "paypal-login" -> "-login". Labels
    without a hyphenated brand part come back unchanged.
    """
    if "-" not in attacker_base:
        return attacker_base

    parts = attacker_base.split("-")
    brand_index = next((i for i, p in enumerate(parts) if is_similar(p, target_base)), None)
    if brand_index is None:
        return attacker_base

    before = [p for p in parts[:brand_index] if p]
    after = [p for p in parts[brand_index + 1:] if p]
    if before and not after:
        return "-".join(before) + "-"
    if after and not before:
        return "-" + "-".join(after)
    return attacker_base
