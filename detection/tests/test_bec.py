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

"""Tests for the BEC detection layer: content patterns, impersonation, first contact."""
import pytest

from detection.analyzers.bec import BECAnalyzer
from detection.analyzers.bec.impersonation import detect_impersonation, executive_title, match_vip
from detection.analyzers.bec.models import VIPEntry
from detection.analyzers.bec.signals import (
    assess_amount_risk,
    detect_compound_attack,
    extract_amounts,
    scan_financial_entities,
    scan_patterns,
)
from detection.history import ContactHistory
from detection.models import EmailAddress, EmailBody, EmailEvent


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_email(**kwargs) -> EmailEvent:
    defaults = {
        "message_id": "bec-test-001",
        "tenant_id": "tenant-001",
        "sender": "alex@partner.com",
        "sender_name": "Alex Park",
        "to": [EmailAddress(address="finance@company.com", name="Finance Team")],
        "subject": "Lunch",
        "body": EmailBody(text="Hello, are we still on for Thursday?"),
        "received_at": "2026-02-10T15:00:00+00:00",
    }
    defaults.update(kwargs)
    return EmailEvent(**defaults)


def _wire_email(**kwargs) -> EmailEvent:
    defaults = {
        "subject": "Wire transfer",
        "body": EmailBody(text="Please wire the funds today. Send $45,000 to the bank account below."),
    }
    defaults.update(kwargs)
    return _make_email(**defaults)


def _types(result):
    return [s.type for s in result.signals]


VIPS = {
    "tenant-001": [VIPEntry(display_name="Jane Doe", email="jane.doe@company.com", title="CEO", aliases=["J. Doe"])],
}


# ---------------------------------------------------------------------------
# Content scanning
# ---------------------------------------------------------------------------

class TestPatterns:

    def test_wire_transfer_keyword_and_regex(self):
        matches = scan_patterns("Wire transfer", "Please wire the funds to the new account.")
        wire = next(m for m in matches if m.pattern.id == "wire_transfer_request")
        assert wire.score == pytest.approx(0.7)
        assert '"wire transfer" in subject' in wire.evidence

    def test_keywords_match_whole_words_only(self):
        # "now" inside "known" and "snow" must not count as urgency
        matches = scan_patterns("", "As you know, the snow is known to be heavy.")
        assert not any(m.pattern.id == "urgency_pressure" for m in matches)

    def test_sorted_by_score(self):
        matches = scan_patterns("urgent", "Please buy gift cards, google play cards, visa gift")
        assert matches[0].pattern.id == "gift_card_scam"
        assert [m.score for m in matches] == sorted((m.score for m in matches), reverse=True)

    def test_no_patterns_in_clean_text(self):
        assert scan_patterns("Lunch", "Hello, are we still on for Thursday?") == []


class TestAmounts:

    @pytest.mark.parametrize("text, value", [
        ("send $45,000 please", 45000.0),
        ("a total of 1,250.50 USD", 1250.5),
        ("USD 9000 is due", 9000.0),
    ])
    def test_extract(self, text, value):
        assert extract_amounts(text)[0][0] == value

    @pytest.mark.parametrize("value, level", [
        (150_000, "critical"), (45_000, "high"), (6_000, "medium"), (100, "low"),
    ])
    def test_risk_levels(self, value, level):
        assert assess_amount_risk([(value, str(value))]).risk_level == level

    def test_financial_entities(self):
        text = "Routing number: 021000021, account 12345678901. bank: First National"
        entities = scan_financial_entities(text)
        assert "routing:021000021" in entities
        assert "account:12345678901" in entities
        assert "bank:First National" in entities


class TestCompound:

    def test_wire_plus_urgency_is_critical(self):
        compound = detect_compound_attack(scan_patterns("Urgent", "Please wire the funds"))
        assert compound.is_compound_attack
        assert compound.severity == "critical"

    def test_single_pattern_is_not_compound(self):
        assert not detect_compound_attack(scan_patterns("", "Please wire the funds")).is_compound_attack


# ---------------------------------------------------------------------------
# Impersonation
# ---------------------------------------------------------------------------

class TestImpersonation:

    def test_executive_title(self):
        assert executive_title("John Smith, CEO") == "CEO"
        assert executive_title("John Smith") is None

    def test_match_vip_by_alias(self):
        assert match_vip("J. Doe", VIPS["tenant-001"]).display_name == "Jane Doe"
        assert match_vip("Janet", VIPS["tenant-001"]) is None

    def test_vip_name_from_other_address(self):
        result = detect_impersonation("jane.doe.ceo@gmail.com", "Jane Doe", vips=VIPS["tenant-001"])
        assert result.is_impersonation
        assert result.impersonation_type == "display_name_spoof"
        assert result.matched_vip.email == "jane.doe@company.com"

    def test_vip_own_address_is_fine(self):
        result = detect_impersonation("jane.doe@company.com", "Jane Doe", vips=VIPS["tenant-001"])
        assert not result.is_impersonation

    def test_title_on_free_mail(self):
        result = detect_impersonation("john.smith@gmail.com", "John Smith, CEO")
        assert result.is_impersonation
        assert result.confidence == pytest.approx(0.75)
        assert {s.type for s in result.signals} == {"title_spoof", "free_email_executive"}

    def test_title_on_corporate_domain(self):
        result = detect_impersonation("john@partner.com", "John Smith, CEO")
        assert result.impersonation_type == "title_spoof"
        assert result.confidence == pytest.approx(0.6)

    def test_reply_to_metadata(self):
        result = detect_impersonation("a@partner.com", "A", reply_to="collect@gmail.com")
        signal = next(s for s in result.signals if s.type == "reply_to_mismatch")
        assert signal.severity == "high"
        assert signal.metadata["reply_to_domain"] == "gmail.com"

    def test_cousin_of_organisation_domain(self):
        result = detect_impersonation("ap@cornpany.com", "Accounts", organization_domains=["company.com"])
        assert result.is_impersonation
        assert result.impersonation_type == "cousin_domain"

    def test_unicode_homoglyph(self):
        result = detect_impersonation("john@partner.com", "J\u043ehn Smith")
        assert result.impersonation_type == "unicode_spoof"
        assert result.is_impersonation


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class TestBECAnalyzer:

    def test_clean_email(self):
        result = BECAnalyzer().analyze(_make_email())
        assert result.score == 0
        assert result.signals == []
        assert result.metadata["is_bec"] is False

    def test_wire_request_is_bec(self):
        result = BECAnalyzer().analyze(_wire_email())
        types = _types(result)

        assert result.metadata["is_bec"]
        assert result.metadata["risk_level"] == "critical"
        assert result.score >= 80
        assert "bec_wire_transfer_request" in types
        assert "bec_urgency_pressure" in types
        assert "bec_compound_attack" in types
        assert "bec_detected" in types

        financial = next(s for s in result.signals if s.type == "bec_financial_risk")
        assert financial.severity == "critical"
        assert financial.score == 20
        assert financial.metadata["amounts"] == [45000.0]

    def test_wire_signal_severity(self):
        wire = next(s for s in BECAnalyzer().analyze(_wire_email()).signals if s.type == "bec_wire_transfer_request")
        assert wire.severity == "critical"
        assert wire.score == 35

    def test_summary_mentions_amount(self):
        detected = next(s for s in BECAnalyzer().analyze(_wire_email()).signals if s.type == "bec_detected")
        assert "Financial request for $45,000" in detected.detail
        assert "wire transfer request" in detected.detail

    def test_impersonation_signal(self):
        email = _make_email(sender="john.smith@gmail.com", sender_name="John Smith, CEO")
        signal = next(s for s in BECAnalyzer().analyze(email).signals if s.type == "bec_impersonation")
        assert signal.severity == "critical"
        assert signal.score == 40

    def test_reply_to_signal_carries_domain(self):
        email = _make_email(sender="john.smith@gmail.com", sender_name="John Smith, CEO", reply_to="x@other.net")
        signal = next(s for s in BECAnalyzer().analyze(email).signals if s.type == "bec_reply_to_mismatch")
        assert signal.metadata["reply_to_domain"] == "other.net"

    def test_layer_score_at_least_50_when_bec(self):
        email = _make_email(sender="john.smith@gmail.com", sender_name="John Smith, CEO")
        result = BECAnalyzer().analyze(email)
        assert result.metadata["is_bec"]
        assert result.score >= 50


class TestFirstContact:

    def test_first_contact_info_without_title(self):
        result = BECAnalyzer(history=ContactHistory()).analyze(_make_email())
        signal = next(s for s in result.signals if s.type == "first_contact")
        assert signal.severity == "info"
        assert signal.score == 15
        assert signal.metadata["recipients"] == ["finance@company.com"]

    def test_first_contact_warning_with_title(self):
        email = _make_email(sender="john@new-vendor.net", sender_name="John Smith, CFO")
        result = BECAnalyzer(history=ContactHistory()).analyze(email)
        signal = next(s for s in result.signals if s.type == "first_contact")
        assert signal.severity == "warning"

    def test_known_contact_no_signal(self):
        history = ContactHistory()
        email = _make_email()
        history.record(email)
        assert "first_contact" not in _types(BECAnalyzer(history=history).analyze(email))

    def test_internal_mail_is_not_first_contact(self):
        email = _make_email(sender="colleague@company.com")
        assert "first_contact" not in _types(BECAnalyzer(history=ContactHistory()).analyze(email))

    def test_vip_impersonation_on_first_contact(self):
        email = _make_email(sender="jane.doe.ceo@gmail.com", sender_name="Jane Doe")
        result = BECAnalyzer(history=ContactHistory(), vips=VIPS).analyze(email)
        signal = next(s for s in result.signals if s.type == "first_contact_vip_impersonation")
        assert signal.severity == "critical"
        assert signal.metadata["vip_email"] == "jane.doe@company.com"

    def test_vips_are_per_tenant(self):
        email = _make_email(tenant_id="tenant-002", sender="jane.doe.ceo@gmail.com", sender_name="Jane Doe")
        result = BECAnalyzer(history=ContactHistory(), vips=VIPS).analyze(email)
        assert "first_contact_vip_impersonation" not in _types(result)

    def test_executive_wire_request_from_new_sender(self):
        email = _wire_email(sender="john.smith@ceo-payments.net", sender_name="John Smith, CEO")
        types = _types(BECAnalyzer(history=ContactHistory()).analyze(email))
        assert "first_contact" in types
        assert "bec_wire_transfer_request" in types
        assert "bec_financial_risk" in types
