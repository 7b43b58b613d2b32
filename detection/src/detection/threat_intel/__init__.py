from detection.threat_intel.aggregator import (
    FEED_RELIABILITY,
    ThreatIntelAggregator,
    ThreatIntelResult,
    ThreatIntelSource,
    threat_intel_to_signals,
)
from detection.threat_intel.feeds import (
    FeedResponse,
    PhishTankFeed,
    ThreatFeed,
    URLhausFeed,
    VirusTotalFeed,
    build_feeds,
)

__all__ = [
    "FEED_RELIABILITY",
    "FeedResponse",
    "PhishTankFeed",
    "ThreatFeed",
    "ThreatIntelAggregator",
    "ThreatIntelResult",
    "ThreatIntelSource",
    "URLhausFeed",
    "VirusTotalFeed",
    "build_feeds",
    "threat_intel_to_signals",
]
