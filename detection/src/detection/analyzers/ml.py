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
Analyzer: Zero-Shot ML Classification

Runs a Hugging Face zero-shot classification pipeline over subject + body
and maps the label scores to threat signals:

    ml_phishing            phishing is the top label (> 60%)
    ml_bec                 business email compromise is the top label
    ml_malware             malware delivery is the top label
    ml_spam                spam is the top label
    ml_financial_request   the email asks for a payment / financial action

The model is loaded once per worker process, on first use. If it cannot be
loaded the analyzer raises and the pipeline marks the layer skipped.
Requires the ``ml`` extra (transformers + torch).
"""
import logging
import threading
from typing import Any, Callable, Optional

from detection.analyzers._base import BaseAnalyzer
from detection.models import (
    LAYER_ML,
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    EmailEvent,
    LayerResult,
    Signal,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "cross-encoder/nli-distilroberta-base"
MAX_TEXT_CHARS = 1000
DETECTION_THRESHOLD = 0.6
FINANCIAL_THRESHOLD = 0.7

# ---------------------------------------------------------------------------
# Candidate labels
# ---------------------------------------------------------------------------

#: Category -> natural-language hypothesis for zero-shot classification.
CATEGORY_LABELS: dict[str, str] = {
    "phishing": "phishing email trying to steal passwords or account access",
    "bec": "business email compromise impersonating an executive or vendor to request money",
    "malware": "email delivering malware through a malicious attachment or download link",
    "spam": "unsolicited bulk spam or scam advertisement",
    "legitimate": "normal legitimate business or personal email",
}
FINANCIAL_LABEL = "request for a payment, wire transfer, invoice or gift card purchase"

#: category -> (signal type, severity, base score); the score grows with
#: confidence for the critical categories
_CATEGORY_SIGNALS = {
    "phishing": ("ml_phishing", SEVERITY_CRITICAL, 45),
    "bec": ("ml_bec", SEVERITY_CRITICAL, 50),
    "malware": ("ml_malware", SEVERITY_CRITICAL, 55),
    "spam": ("ml_spam", SEVERITY_WARNING, 20),
}
_CATEGORY_NAMES = {
    "phishing": "phishing",
    "bec": "business email compromise",
    "malware": "potential malware delivery",
    "spam": "spam",
}


# ---------------------------------------------------------------------------
# Model loading (lazy singleton per model name)
# ---------------------------------------------------------------------------
_classifiers: dict[str, Any] = {}
_classifiers_lock = threading.Lock()


def get_zero_shot_classifier(model: str = DEFAULT_MODEL) -> Any:
    """Return the shared zero-shot pipeline for ``model``, loading it once.

    Raises RuntimeError when transformers is missing or the model fails to
    load.
    """
    classifier = _classifiers.get(model)
    if classifier is not None:
        return classifier

    with _classifiers_lock:
        classifier = _classifiers.get(model)
        if classifier is None:
            try:
                from transformers import pipeline
            except ImportError as exc:
                raise RuntimeError("transformers is not installed (install the 'ml' extra)") from exc
            logger.info("Loading zero-shot classification model (%s)...", model)
            try:
                classifier = pipeline("zero-shot-classification", model=model, device=-1)
            except Exception as exc:
                raise RuntimeError(f"Failed to load zero-shot model {model}: {exc}") from exc
            _classifiers[model] = classifier
            logger.info("NLP model loaded successfully")
    return classifier


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class ZeroShotMLAnalyzer(BaseAnalyzer):
    """Zero-shot threat classification of the email text."""

    layer = LAYER_ML
    description = "Zero-shot NLP classification into phishing / BEC / malware / spam"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        classifier: Optional[Callable[..., dict]] = None,
    ):
        self.model = model
        self._classifier = classifier

    @property
    def classifier(self) -> Callable[..., dict]:
        if self._classifier is None:
            self._classifier = get_zero_shot_classifier(self.model)
        return self._classifier

    def classify(self, text: str) -> dict[str, float]:
        """Score every category plus the financial-request label (0..1 each)."""
        hypotheses = list(CATEGORY_LABELS.values()) + [FINANCIAL_LABEL]
        output = self.classifier(text[:MAX_TEXT_CHARS], hypotheses, multi_label=True)

        by_hypothesis = dict(zip(output["labels"], output["scores"]))
        scores = {name: float(by_hypothesis.get(h, 0.0)) for name, h in CATEGORY_LABELS.items()}
        scores["financial_request"] = float(by_hypothesis.get(FINANCIAL_LABEL, 0.0))
        return scores

    def analyze(self, email: EmailEvent, prior_signals: Optional[list[Signal]] = None) -> LayerResult:
        scores = self.classify(email.full_text)

        category = max(CATEGORY_LABELS, key=lambda name: scores[name])
        confidence = scores[category]
        threat_score = max(scores[name] for name in _CATEGORY_SIGNALS)

        signals: list[Signal] = []
        if category in _CATEGORY_SIGNALS and confidence > DETECTION_THRESHOLD:
            signal_type, severity, base = _CATEGORY_SIGNALS[category]
            score = base if severity != SEVERITY_CRITICAL else round(base + (confidence - DETECTION_THRESHOLD) * 75)
            signals.append(Signal(
                signal_type, severity, score,
                f"ML classifier detected {_CATEGORY_NAMES[category]} ({confidence * 100:.0f}% confidence)",
                metadata={"category": category, "confidence": round(confidence, 4)},
            ))

        if scores["financial_request"] > FINANCIAL_THRESHOLD:
            signals.append(Signal(
                "ml_financial_request", SEVERITY_WARNING, 15,
                f"ML classifier detected a financial request ({scores['financial_request'] * 100:.0f}% confidence)",
                metadata={"confidence": round(scores["financial_request"], 4)},
            ))

        return self.result(
            signals,
            confidence=confidence,
            score=min(100, round(threat_score * 100 * confidence)),
            category=category,
            label_scores={name: round(value, 4) for name, value in scores.items()},
        )
