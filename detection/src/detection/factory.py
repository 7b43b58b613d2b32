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
Builds the default pipeline and sinks from config.yaml.

Tenant entries may carry brands and VIPs:

    tenants:
      - id: "tenant-a"
        brands:
          - {name: "Acme", domain: "acme.com", aliases: ["acme corp"]}
        vips:
          - {display_name: "Jane Doe", email: "jane@acme.com", title: "CEO"}
    sandbox:
      known_malware_hashes: ["<sha256>", ...]
"""
import importlib.util
import logging
import os
from typing import Optional

from mailguard_shared.config import (
    get_known_senders,
    get_policies,
    get_tenants,
    get_threat_feeds,
    load_config,
)

from detection.analyzers import (
    BECAnalyzer,
    BehavioralAnalyzer,
    DeterministicAnalyzer,
    EnhancedReputationAnalyzer,
    LLMAnalyzer,
    SandboxAnalyzer,
    ZeroShotMLAnalyzer,
)
from detection.analyzers.bec import VIPEntry
from detection.analyzers.reputation.dnsbl import DnsblReputationSource
from detection.classifier import EmailTypeClassifier, SenderRegistry
from detection.config import load_detection_config
from detection.history import ContactHistory
from detection.lookalike import LookalikeLearningService
from detection.pipeline import DetectionPipeline
from detection.policy_engine import PolicyEngine
from detection.quota import LLMQuota
from detection.sinks import LoggingAuditSink, PostgresVerdictSink, VerdictDispatcher, WebhookNotificationSink
from detection.threat_intel import ThreatIntelAggregator, build_feeds

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_tenant_brands(lookalike: LookalikeLearningService, tenants: list[dict]) -> int:
    """Register every tenant's ``brands:`` with the lookalike service."""
    count = 0
    for tenant in tenants:
        tenant_id = tenant.get("id", "")
        for brand in tenant.get("brands", []) or []:
            lookalike.add_tenant_brand(
                tenant_id,
                brand.get("name", brand.get("domain", "")),
                brand["domain"],
                aliases=tuple(brand.get("aliases", []) or []),
                priority=brand.get("priority", "medium"),
            )
            count += 1
    return count


def load_vips(tenants: list[dict]) -> dict[str, list[VIPEntry]]:
    """tenant id -> VIP list, from each tenant's ``vips:``."""
    vips: dict[str, list[VIPEntry]] = {}
    for tenant in tenants:
        entries = [VIPEntry.from_dict(v) for v in tenant.get("vips", []) or []]
        if entries:
            vips[tenant.get("id", "")] = entries
    return vips


def build_pipeline(
    lookalike: Optional[LookalikeLearningService] = None,
    history: Optional[ContactHistory] = None,
    quota: Optional[LLMQuota] = None,
) -> DetectionPipeline:
    """Wire the default collaborators for a worker process.

    ``MAILGUARD_ENABLE_ML`` / ``MAILGUARD_ENABLE_LLM`` switch the two
    expensive layers off; ML is also left out when transformers is not
    installed.
    """
    tenants = get_tenants()
    defaults = load_detection_config()

    registry = SenderRegistry(get_known_senders())
    lookalike = lookalike or LookalikeLearningService()
    brands = load_tenant_brands(lookalike, tenants)
    history = history if history is not None else ContactHistory()

    ml = None
    if _env_flag("MAILGUARD_ENABLE_ML", True):
        if importlib.util.find_spec("transformers") is not None:
            ml = ZeroShotMLAnalyzer()
        else:
            logger.info("transformers not installed; ML layer disabled")

    llm = None
    if _env_flag("MAILGUARD_ENABLE_LLM", True):
        llm = LLMAnalyzer(model=defaults.llm_model, max_tokens=defaults.llm_max_tokens)

    sandbox_config = load_config().get("sandbox", {}) or {}

    pipeline = DetectionPipeline(
        policy_engine=PolicyEngine(get_policies()),
        classifier=EmailTypeClassifier(registry),
        deterministic=DeterministicAnalyzer(lookalike),
        reputation=EnhancedReputationAnalyzer(
            registry=registry,
            source=DnsblReputationSource(),
            threat_intel=ThreatIntelAggregator(build_feeds(get_threat_feeds())),
            lookup_timeout=defaults.url_analysis_timeout_ms / 1000.0,
        ),
        ml=ml,
        bec=BECAnalyzer(history=history, vips=load_vips(tenants)),
        llm=llm,
        sandbox=SandboxAnalyzer(sandbox_config.get("known_malware_hashes", [])),
        behavioral=BehavioralAnalyzer(history),
        quota=quota or LLMQuota(),
        config_loader=load_detection_config,
    )
    logger.info(
        "Detection pipeline ready: %d known sender(s), %d tenant brand(s), ml=%s, llm=%s",
        len(registry), brands, ml is not None, llm is not None,
    )
    return pipeline


def build_dispatcher() -> VerdictDispatcher:
    return VerdictDispatcher(
        persistence=PostgresVerdictSink(),
        notifier=WebhookNotificationSink(),
        auditor=LoggingAuditSink(),
    )
