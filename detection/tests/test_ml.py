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

"""Tests for the zero-shot ML layer (model replaced by a fake classifier)."""
from unittest.mock import patch

import pytest

from detection.analyzers import ml
from detection.analyzers.ml import CATEGORY_LABELS, FINANCIAL_LABEL, ZeroShotMLAnalyzer
from detection.models import EmailBody, EmailEvent


class _FakeClassifier:
    """Mimics the transformers zero-shot pipeline output."""

    def __init__(self, **scores):
        self.scores = scores
        self.calls = []

    def __call__(self, text, hypotheses, multi_label=False):
        self.calls.append((text, hypotheses, multi_label))
        by_name = dict(CATEGORY_LABELS, financial_request=FINANCIAL_LABEL)
        labels = [by_name[name] for name in self.scores]
        return {"sequence": text, "labels": labels, "scores": list(self.scores.values())}


def _make_email(**kwargs) -> EmailEvent:
    defaults = {
        "message_id": "ml-test-001",
        "sender": "a@example.com",
        "subject": "Account notice",
        "body": EmailBody(text="Your password expires today."),
    }
    defaults.update(kwargs)
    return EmailEvent(**defaults)


def _analyze(**scores):
    classifier = _FakeClassifier(**scores)
    return ZeroShotMLAnalyzer(classifier=classifier).analyze(_make_email()), classifier


class TestClassify:

    def test_missing_labels_score_zero(self):
        analyzer = ZeroShotMLAnalyzer(classifier=_FakeClassifier(phishing=0.8))
        scores = analyzer.classify("text")
        assert scores["phishing"] == 0.8
        assert scores["spam"] == 0.0
        assert scores["financial_request"] == 0.0

    def test_multi_label_with_all_hypotheses(self):
        _, classifier = _analyze(phishing=0.8)
        text, hypotheses, multi_label = classifier.calls[0]
        assert multi_label is True
        assert FINANCIAL_LABEL in hypotheses
        assert len(hypotheses) == len(CATEGORY_LABELS) + 1
        assert text.startswith("Subject: Account notice")

    def test_text_truncated(self):
        classifier = _FakeClassifier(legitimate=0.9)
        ZeroShotMLAnalyzer(classifier=classifier).analyze(_make_email(body=EmailBody(text="x" * 5000)))
        assert len(classifier.calls[0][0]) == 1000


class TestAnalyze:

    def test_phishing(self):
        result, _ = _analyze(phishing=0.8, legitimate=0.1, spam=0.05)
        signal = result.signals[0]
        assert signal.type == "ml_phishing"
        assert signal.severity == "critical"
        assert signal.score == 60
        assert result.score == 64
        assert result.confidence == pytest.approx(0.8)
        assert result.metadata["category"] == "phishing"

    def test_spam_is_warning(self):
        result, _ = _analyze(spam=0.7, legitimate=0.2)
        assert [(s.type, s.severity, s.score) for s in result.signals] == [("ml_spam", "warning", 20)]

    def test_below_threshold_no_signal(self):
        result, _ = _analyze(bec=0.55, legitimate=0.3)
        assert result.signals == []
        assert result.metadata["category"] == "bec"

    def test_legitimate(self):
        result, _ = _analyze(legitimate=0.9, phishing=0.1)
        assert result.signals == []
        assert result.score == 9

    def test_financial_request(self):
        result, _ = _analyze(legitimate=0.6, financial_request=0.75)
        signal = result.signals[0]
        assert signal.type == "ml_financial_request"
        assert signal.score == 15

    def test_label_scores_reported(self):
        result, _ = _analyze(phishing=0.8)
        assert set(result.metadata["label_scores"]) == set(CATEGORY_LABELS) | {"financial_request"}


class TestModelLoading:

    def test_loaded_model_reused(self):
        sentinel = _FakeClassifier(legitimate=1.0)
        with patch.dict(ml._classifiers, {"fake/model": sentinel}):
            assert ZeroShotMLAnalyzer(model="fake/model").classifier is sentinel
            assert ml.get_zero_shot_classifier("fake/model") is sentinel
