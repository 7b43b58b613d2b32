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
MailGuard Analyzer Base Class

Every detection layer implements this one interface.

To create a new layer:
1. Create a new .py file in this folder (e.g. my_check.py)
2. Import BaseAnalyzer from this file
3. Create a class that inherits from BaseAnalyzer and set ``layer``
4. Implement analyze(email, prior_signals)
5. Hand an instance to the pipeline (see detection.factory)

Example:
    from detection.analyzers._base import BaseAnalyzer

    class MyAnalyzer(BaseAnalyzer):
        layer = "behavioral"
        description = "What this analyzer does"

        def analyze(self, email, prior_signals=None):
            signals = [...]
            return self.result(signals, confidence=0.8)
"""
from abc import ABC, abstractmethod
from typing import Optional

from detection.models import EmailEvent, LayerResult, Signal


class BaseAnalyzer(ABC):
    """
    Base class for all detection layers.

    Attributes:
        layer:       Layer name the result is reported under
                     (deterministic, reputation, ml, bec, llm, sandbox, behavioral)
        description: Human-readable description of what it checks
    """

    layer: str = "unnamed"
    description: str = ""

    @abstractmethod
    def analyze(self, email: EmailEvent, prior_signals: Optional[list[Signal]] = None) -> LayerResult:
        """
        Analyze an email and return this layer's result.

        Args:
            email:         The normalized email.
            prior_signals: Signals produced by the layers that already ran,
                           in pipeline order. Read-only.

        Returns:
            LayerResult with score 0 (clean) to 100 (definitely malicious),
            a confidence 0..1 and the signals that explain the score.
        """
        ...

    def result(self, signals: list[Signal], confidence: float, score: Optional[float] = None, **metadata) -> LayerResult:
        """Build this layer's result; the score defaults to the capped signal sum."""
        if score is None:
            score = min(100, sum(s.score for s in signals))
        return LayerResult(
            layer=self.layer,
            score=score,
            confidence=confidence,
            signals=list(signals),
            metadata=dict(metadata),
        )
