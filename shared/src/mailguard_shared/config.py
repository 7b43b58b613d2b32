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
MailGuard — Shared Configuration Loader

Provides a single, cached loader for config.yaml used by the detection
worker and its helpers. Every section accessor returns plain dicts/lists so
callers can build their own typed views on top.
"""

import logging
import os
from functools import lru_cache
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# Search paths for config.yaml (Docker mount, then relative to repo root)
_CONFIG_PATHS = [
    "/app/config/config.yaml",
    os.path.join(os.path.dirname(__file__), "..", "..", "..", "config", "config.yaml"),
]


@lru_cache(maxsize=1)
def load_config() -> dict:
    """Load and cache config.yaml from known paths.

    Returns:
        The parsed YAML config as a dict, or an empty dict if no config found.
    """
    config_path = os.environ.get("MAILGUARD_CONFIG_PATH", "")
    search_paths = [config_path] + _CONFIG_PATHS if config_path else _CONFIG_PATHS

    for path in search_paths:
        if not path:
            continue
        try:
            with open(path) as f:
                config = yaml.safe_load(f) or {}
            logger.info("Configuration loaded from %s", path)
            return config
        except FileNotFoundError:
            continue

    logger.warning("No config.yaml found, using empty configuration")
    return {}


def get_policies() -> list[dict]:
    """Return the policies list from config."""
    return load_config().get("policies", [])


def get_tenants() -> list[dict]:
    """Return the tenants list from config."""
    return load_config().get("tenants", [])


def get_tenant(tenant_id: str) -> Optional[dict]:
    """Return the tenant entry whose ``id`` or ``alias`` equals tenant_id."""
    for tenant in get_tenants():
        if tenant.get("id") == tenant_id or tenant.get("alias") == tenant_id:
            return tenant
    return None


def get_detection_defaults() -> dict:
    """Return the global ``detection:`` section (threshold and layer knobs)."""
    return load_config().get("detection", {}) or {}


def get_known_senders() -> list[dict]:
    """Return the sender registry entries (domain, category, trust score)."""
    return load_config().get("known_senders", [])


def get_threat_feeds() -> dict:
    """Return the ``threat_intel:`` section (feed API keys and toggles)."""
    return load_config().get("threat_intel", {}) or {}
