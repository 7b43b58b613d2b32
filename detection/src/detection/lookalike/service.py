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
MailGuard Detection — Adaptive Lookalike Domain Learning

Detects domains impersonating a protected brand and learns from confirmed
detections and operator feedback.

Detection order for one domain:
    1. the tenant's own brands
    2. the global protected brand list
    3. learned patterns with positive feedback (e.g. "paypa1-new.com")
    4. generalized affix patterns ("secure-*")

Learned patterns are keyed by (target brand, attack type). Generalized
patterns are keyed by ("*", affix) and appear once three or more patterns
share the same affix.

Thread-safe: patterns are immutable and replaced wholesale. Updates to one
key are serialized by a per-key lock; readers copy a snapshot of the store.
"""

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from detection.lookalike.brands import PROTECTED_BRANDS
from detection.lookalike.similarity import (
    cousin_confidence,
    extract_affix,
    homoglyph_confidence,
    homoglyph_substitutions,
    levenshtein,
    typosquat_confidence,
)

logger = logging.getLogger(__name__)

ATTACK_HOMOGLYPH = "homoglyph"
ATTACK_TYPOSQUAT = "typosquat"
ATTACK_COUSIN = "cousin"
ATTACK_TYPES = (ATTACK_HOMOGLYPH, ATTACK_TYPOSQUAT, ATTACK_COUSIN)

GENERALIZED_BRAND = "*"
GENERALIZE_MIN_PATTERNS = 3

# Half-life style decay of old evidence, in days
DECAY_DAYS = 7.0

FEEDBACK_CONFIRMED = 0.15
FEEDBACK_REJECTED = -0.2
FEEDBACK_SOURCE_WEIGHTS = {
    "analyst": 1.5,
    "user": 1.0,
    "automated": 0.8,
}
CONFIRMED_CONFIDENCE_STEP = 0.03
FALSE_POSITIVE_CONFIDENCE_STEP = 0.1
ADAPTIVE_FACTOR = 0.1

LEARNED_MATCH_MIN_OCCURRENCES = 2


@dataclass(frozen=True)
class TenantBrand:
    domain: str
    brand_name: str
    aliases: tuple = ()
    priority: str = "medium"


@dataclass(frozen=True)
class LearnedPattern:
    pattern: str
    target_brand: str
    target_domain: str
    attack_type: str
    occurrences: int
    average_confidence: float
    is_generalized: bool
    last_seen: datetime
    feedback_score: float = 0.0


@dataclass(frozen=True)
class LookalikeDetection:
    """A confirmed lookalike fed back into the learner."""
    attacker_domain: str
    target_brand: str
    target_domain: str
    attack_type: str
    confidence: float
    timestamp: Optional[datetime] = None


@dataclass
class LookalikeResult:
    is_lookalike: bool = False
    target_brand: Optional[str] = None
    target_domain: Optional[str] = None
    attack_type: Optional[str] = None
    base_confidence: float = 0.0
    learning_boost: float = 0.0
    final_confidence: float = 0.0
    matched_pattern: Optional[LearnedPattern] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _base_label(domain: str) -> str:
    return domain.split(".")[0].lower()


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class LookalikeLearningService:
    """Brand lookalike detector with feedback-driven learning.

    One instance is shared by every pipeline in a worker process and is
    handed to the deterministic analyzer at construction time. Tests build
    fresh instances.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._patterns: dict[tuple, LearnedPattern] = {}
        self._domain_keys: dict[str, set] = {}
        self._tenant_brands: dict[str, list[TenantBrand]] = {}
        self._feedback_history: dict[str, list[dict]] = {}
        self._locks: dict[tuple, threading.Lock] = {}
        self._global_lock = threading.Lock()
        self._store_lock = threading.Lock()

    def _get_lock(self, key: tuple) -> threading.Lock:
        """Get or create the lock for one pattern key."""
        if key not in self._locks:
            with self._global_lock:
                if key not in self._locks:
                    self._locks[key] = threading.Lock()
        return self._locks[key]

    def _time_weight(self, last_seen: datetime, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        days = max(0.0, (now - last_seen).total_seconds() / 86400.0)
        return math.exp(-days / DECAY_DAYS)

    # -------------------------------------------------------------------------
    # Tenant brands
    # -------------------------------------------------------------------------

    def add_tenant_brand(
        self,
        tenant_id: str,
        brand_name: str,
        domain: str,
        aliases: tuple = (),
        priority: str = "medium",
    ) -> None:
        brand = TenantBrand(
            domain=domain.lower().strip(),
            brand_name=brand_name,
            aliases=tuple(aliases),
            priority=priority,
        )
        with self._store_lock:
            self._tenant_brands.setdefault(tenant_id, []).append(brand)
        logger.info("Tenant %s: protecting brand %s (%s)", tenant_id, brand_name, brand.domain)

    def tenant_brands(self, tenant_id: str) -> list[TenantBrand]:
        with self._store_lock:
            return list(self._tenant_brands.get(tenant_id, []))

    def learned_patterns(self) -> list[LearnedPattern]:
        """Consistent snapshot of every learned pattern."""
        with self._store_lock:
            return list(self._patterns.values())

    def feedback_history(self, domain: str) -> list[dict]:
        with self._store_lock:
            return list(self._feedback_history.get(domain.lower(), []))

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def record_detection(self, detection: LookalikeDetection) -> LearnedPattern:
        """Fold a confirmed detection into its (brand, attack type) pattern."""
        if detection.attack_type not in ATTACK_TYPES:
            raise ValueError(f"Unknown attack type: {detection.attack_type!r}")

        key = (detection.target_brand, detection.attack_type)
        attacker = detection.attacker_domain.lower()
        seen_at = detection.timestamp or self._clock()

        with self._get_lock(key):
            with self._store_lock:
                existing = self._patterns.get(key)

            if existing is not None:
                weighted = existing.occurrences * self._time_weight(existing.last_seen, seen_at)
                average = (existing.average_confidence * weighted + detection.confidence) / (weighted + 1)
                pattern = replace(
                    existing,
                    occurrences=existing.occurrences + 1,
                    average_confidence=average,
                    last_seen=seen_at,
                )
            else:
                pattern = LearnedPattern(
                    pattern=extract_affix(_base_label(attacker), _base_label(detection.target_domain)),
                    target_brand=detection.target_brand,
                    target_domain=detection.target_domain.lower(),
                    attack_type=detection.attack_type,
                    occurrences=1,
                    average_confidence=detection.confidence,
                    is_generalized=False,
                    last_seen=seen_at,
                )

            with self._store_lock:
                self._patterns[key] = pattern
                self._domain_keys.setdefault(attacker, set()).add(key)

        logger.debug(
            "Learned %s pattern for %s: occurrences=%d avg=%.3f",
            detection.attack_type, detection.target_brand,
            pattern.occurrences, pattern.average_confidence,
        )
        self._generalize()
        return pattern

    def _generalize(self) -> None:
        """Promote affixes shared by enough patterns to wildcard patterns."""
        groups: dict[str, list[LearnedPattern]] = {}
        for pattern in self.learned_patterns():
            if pattern.is_generalized:
                continue
            affix = pattern.pattern
            if affix.endswith("-") or affix.startswith("-"):
                groups.setdefault(affix, []).append(pattern)

        for affix, members in groups.items():
            if len(members) < GENERALIZE_MIN_PATTERNS:
                continue
            key = (GENERALIZED_BRAND, affix)
            with self._get_lock(key):
                with self._store_lock:
                    if key in self._patterns:
                        continue
                    self._patterns[key] = LearnedPattern(
                        pattern=affix,
                        target_brand=GENERALIZED_BRAND,
                        target_domain=GENERALIZED_BRAND,
                        attack_type=ATTACK_COUSIN,
                        occurrences=sum(p.occurrences for p in members),
                        average_confidence=sum(p.average_confidence for p in members) / len(members),
                        is_generalized=True,
                        last_seen=self._clock(),
                    )
            logger.info("Generalized lookalike affix %r from %d patterns", affix, len(members))

    def record_feedback(
        self,
        domain: str,
        was_correct: bool,
        confirmed_threat: bool,
        source: str = "user",
    ) -> int:
        """Apply operator feedback to every pattern the domain relates to.

        Returns the number of patterns adjusted.
        """
        if source not in FEEDBACK_SOURCE_WEIGHTS:
            raise ValueError(f"Unknown feedback source: {source!r}")

        domain = domain.lower().strip()
        base = _base_label(domain)
        confirmed = was_correct and confirmed_threat
        adjustment = (FEEDBACK_CONFIRMED if confirmed else FEEDBACK_REJECTED) * FEEDBACK_SOURCE_WEIGHTS[source]

        with self._store_lock:
            self._feedback_history.setdefault(domain, []).append({
                "was_correct": was_correct,
                "confirmed_threat": confirmed_threat,
                "source": source,
                "at": self._clock(),
            })
            keys = set(self._domain_keys.get(domain, set()))
            keys.update(
                key for key, pattern in self._patterns.items()
                if self._matches_pattern(base, pattern)
            )

        for key in keys:
            with self._get_lock(key):
                with self._store_lock:
                    pattern = self._patterns.get(key)
                if pattern is None:
                    continue

                average = pattern.average_confidence
                if confirmed:
                    average = min(1.0, average + CONFIRMED_CONFIDENCE_STEP)
                elif not was_correct:
                    average = max(0.0, average - FALSE_POSITIVE_CONFIDENCE_STEP)

                updated = replace(
                    pattern,
                    feedback_score=_clamp(pattern.feedback_score + adjustment, -1.0, 1.0),
                    average_confidence=average,
                )
                with self._store_lock:
                    self._patterns[key] = updated

        logger.info(
            "Lookalike feedback for %s (correct=%s, confirmed=%s, source=%s) adjusted %d pattern(s)",
            domain, was_correct, confirmed_threat, source, len(keys),
        )
        return len(keys)

    @staticmethod
    def _matches_pattern(base: str, pattern: LearnedPattern) -> bool:
        if pattern.is_generalized:
            if pattern.pattern.endswith("-"):
                return base.startswith(pattern.pattern)
            if pattern.pattern.startswith("-"):
                return base.endswith(pattern.pattern)
        core = pattern.pattern.replace("-", "")
        return bool(core) and core in base

    def adaptive_confidence(self, domain: str, target_brand: str, base_confidence: float) -> float:
        """Adjust a detector confidence by what was learned about the brand.

        Brand-specific patterns always apply to their brand; generalized
        patterns apply when their affix is present in the domain.
        """
        base = _base_label(domain)
        now = self._clock()
        adjustment = 0.0
        for pattern in self.learned_patterns():
            if pattern.is_generalized:
                applies = self._matches_pattern(base, pattern)
            else:
                applies = pattern.target_brand == target_brand
            if not applies or pattern.feedback_score == 0:
                continue
            occurrence_weight = min(pattern.occurrences, 10) / 10
            adjustment += (
                pattern.feedback_score
                * occurrence_weight
                * self._time_weight(pattern.last_seen, now)
                * ADAPTIVE_FACTOR
            )
        return _clamp(base_confidence + adjustment, 0.0, 1.0)

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def detect(self, tenant_id: Optional[str], domain: str) -> LookalikeResult:
        """Decide whether ``domain`` impersonates a tenant or protected brand."""
        if not domain or len(domain) < 3 or "." not in domain:
            return LookalikeResult()

        domain = domain.lower().strip()
        base = _base_label(domain)

        candidates: list[tuple[str, str]] = []
        if tenant_id:
            candidates.extend((b.domain, b.brand_name) for b in self.tenant_brands(tenant_id))
        candidates.extend((b.domain, b.name) for b in PROTECTED_BRANDS)

        for brand_domain, brand_name in candidates:
            result = self._check_brand(domain, base, brand_domain, brand_name)
            if result is not None:
                final = self.adaptive_confidence(domain, brand_name, result.base_confidence)
                result.final_confidence = final
                result.learning_boost = round(final - result.base_confidence, 4)
                return result

        return self._check_learned(base) or self._check_generalized(base) or LookalikeResult()

    @staticmethod
    def _check_brand(domain: str, base: str, brand_domain: str, brand_name: str) -> Optional[LookalikeResult]:
        brand_domain = brand_domain.lower()
        if domain == brand_domain or domain.endswith("." + brand_domain):
            return None

        brand_base = _base_label(brand_domain)
        detectors = (
            (ATTACK_HOMOGLYPH, homoglyph_confidence),
            (ATTACK_TYPOSQUAT, typosquat_confidence),
            (ATTACK_COUSIN, cousin_confidence),
        )
        for attack_type, detector in detectors:
            confidence = detector(base, brand_base)
            if confidence is not None:
                return LookalikeResult(
                    is_lookalike=True,
                    target_brand=brand_name,
                    target_domain=brand_domain,
                    attack_type=attack_type,
                    base_confidence=confidence,
                    final_confidence=confidence,
                )
        return None

    def _check_learned(self, base: str) -> Optional[LookalikeResult]:
        for pattern in self.learned_patterns():
            if pattern.is_generalized or pattern.feedback_score <= 0:
                continue
            if pattern.occurrences < LEARNED_MATCH_MIN_OCCURRENCES:
                continue
            target_base = _base_label(pattern.target_domain)
            if not _contains_variant(base, target_base, pattern.attack_type):
                continue

            base_confidence = pattern.average_confidence * 0.9
            boost = pattern.feedback_score * 0.1 * min(pattern.occurrences, 10)
            return LookalikeResult(
                is_lookalike=True,
                target_brand=pattern.target_brand,
                target_domain=pattern.target_domain,
                attack_type=pattern.attack_type,
                base_confidence=base_confidence,
                learning_boost=boost,
                final_confidence=min(1.0, base_confidence + boost),
                matched_pattern=pattern,
            )
        return None

    def _check_generalized(self, base: str) -> Optional[LookalikeResult]:
        for pattern in self.learned_patterns():
            if not pattern.is_generalized or pattern.feedback_score <= 0:
                continue
            if not self._matches_pattern(base, pattern):
                continue

            base_confidence = pattern.average_confidence * 0.8
            boost = pattern.feedback_score * 0.1
            return LookalikeResult(
                is_lookalike=True,
                attack_type=pattern.attack_type,
                base_confidence=base_confidence,
                learning_boost=boost,
                final_confidence=min(1.0, base_confidence + boost),
                matched_pattern=pattern,
            )
        return None


def _contains_variant(base: str, target_base: str, attack_type: str) -> bool:
    """True if a hyphen-separated part of ``base`` is a variant of the brand."""
    if not target_base:
        return False
    for part in base.split("-"):
        if len(part) < len(target_base) - 1:
            continue
        if attack_type == ATTACK_HOMOGLYPH and homoglyph_substitutions(part, target_base) is not None:
            return True
        if attack_type == ATTACK_TYPOSQUAT and levenshtein(part, target_base) in (1, 2):
            return True
    return False
