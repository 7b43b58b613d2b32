from detection.analyzers.reputation.analyzer import EnhancedReputationAnalyzer, trust_modifier
from detection.analyzers.reputation.dnsbl import (
    DBL_CODES,
    PROVIDERS,
    ZEN_CODES,
    DnsblReputationSource,
    EntityReputation,
    extract_sender_ip,
)

__all__ = [
    "DBL_CODES",
    "DnsblReputationSource",
    "EnhancedReputationAnalyzer",
    "EntityReputation",
    "PROVIDERS",
    "ZEN_CODES",
    "extract_sender_ip",
    "trust_modifier",
]
