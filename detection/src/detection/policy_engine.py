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
MailGuard Policy Engine

Evaluates configurable YAML rules against an incoming email before any
analysis runs. Supports matching by:
  - tenant (exact id / alias, or "*")
  - sender (exact, wildcard like "*@*.xyz", or "*")
  - recipients (exact, list of patterns, or "*")
  - optional ``when`` conditions: subject_contains, header (equals / contains / exists)

Example:

    policies:
      - id: allow-payroll-vendor
        name: "Allow payroll vendor"
        sender: "*@payroll-partner.com"
        action: allow
      - id: block-xyz
        name: "Block .xyz senders"
        sender: "*@*.xyz"
        action: block
"""
import fnmatch
import logging

from detection.models import EmailEvent, PolicyResult

logger = logging.getLogger(__name__)

# Action priority: higher wins when multiple policies match.
# Allow-lists are checked before block-lists.
ACTION_PRIORITY = {
    "allow": 4,
    "block": 3,
    "quarantine": 2,
    "tag": 1,
}


class PolicyEngine:
    """Evaluate rules from config against an email."""

    def __init__(self, policies: list[dict]):
        for policy in policies:
            action = policy.get("action", "")
            if action not in ACTION_PRIORITY:
                raise ValueError(f"Policy '{policy.get('name', '')}' has unknown action: {action!r}")
        self.policies = policies
        logger.info("PolicyEngine loaded %d rule(s)", len(policies))

    def evaluate(self, email: EmailEvent, tenant_id: str) -> PolicyResult:
        """Evaluate all policies against an email. Highest-priority action wins."""
        best: PolicyResult | None = None

        for policy in self.policies:
            if not self._matches(policy, email, tenant_id):
                continue
            candidate = PolicyResult(
                matched=True,
                action=policy["action"],
                policy_id=str(policy.get("id", policy.get("name", ""))),
                policy_name=policy.get("name", ""),
                reason=policy.get("reason", "") or f"Matched policy '{policy.get('name', '')}'",
            )
            if best is None or ACTION_PRIORITY[candidate.action] > ACTION_PRIORITY[best.action]:
                best = candidate

        if best:
            logger.info(
                "Policy '%s' matched: action=%s for message=%s",
                best.policy_name, best.action, email.message_id,
            )
            return best

        return PolicyResult()

    def _matches(self, policy: dict, email: EmailEvent, tenant_id: str) -> bool:
        return (
            self._match_tenant(policy, email, tenant_id)
            and self._match_sender(policy, email)
            and self._match_recipients(policy, email)
            and self._match_when(policy.get("when", {}) or {}, email)
        )

    # --- Scope matchers ---

    def _match_tenant(self, policy: dict, email: EmailEvent, tenant_id: str) -> bool:
        tenant_filter = policy.get("tenant", "*")
        if tenant_filter == "*":
            return True
        return tenant_filter in (tenant_id, email.tenant_id, email.tenant_alias)

    def _match_sender(self, policy: dict, email: EmailEvent) -> bool:
        sender_filter = policy.get("sender", "*")
        if sender_filter == "*":
            return True
        if isinstance(sender_filter, str):
            sender_filter = [sender_filter]
        sender = email.sender.lower()
        return any(fnmatch.fnmatch(sender, pattern.lower()) for pattern in sender_filter)

    def _match_recipients(self, policy: dict, email: EmailEvent) -> bool:
        recipients_filter = policy.get("recipients", "*")
        if recipients_filter == "*":
            return True
        if isinstance(recipients_filter, str):
            recipients_filter = [recipients_filter]
        # Match if ANY recipient matches ANY filter pattern
        for recipient in email.recipients:
            for pattern in recipients_filter:
                if fnmatch.fnmatch(recipient, pattern.lower()):
                    return True
        return False

    # --- Content conditions ---

    def _match_when(self, when: dict, email: EmailEvent) -> bool:
        if "subject_contains" in when:
            if str(when["subject_contains"]).lower() not in (email.subject or "").lower():
                return False

        header = when.get("header")
        if header:
            name = str(header.get("name", "")).lower()
            value = next((str(v) for k, v in email.headers.items() if k.lower() == name), None)
            if value is None:
                return False
            if "equals" in header and value.lower() != str(header["equals"]).lower():
                return False
            if "contains" in header and str(header["contains"]).lower() not in value.lower():
                return False

        return True
