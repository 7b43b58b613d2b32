from detection.analyzers.bec.analyzer import BECAnalyzer
from detection.analyzers.bec.impersonation import detect_impersonation, executive_title, match_vip
from detection.analyzers.bec.models import (
    BECPattern,
    BECResult,
    FinancialRisk,
    ImpersonationResult,
    PatternMatch,
    VIPEntry,
)
from detection.analyzers.bec.signals import (
    BEC_PATTERNS,
    assess_amount_risk,
    detect_compound_attack,
    extract_amounts,
    scan_financial_entities,
    scan_patterns,
)

__all__ = [
    "BECAnalyzer",
    "detect_impersonation",
    "executive_title",
    "match_vip",
    "BECPattern",
    "BECResult",
    "FinancialRisk",
    "ImpersonationResult",
    "PatternMatch",
    "VIPEntry",
    "BEC_PATTERNS",
    "assess_amount_risk",
    "detect_compound_attack",
    "extract_amounts",
    "scan_financial_entities",
    "scan_patterns",
]
