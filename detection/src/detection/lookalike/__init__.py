from detection.lookalike.brands import HOMOGLYPHS, PROTECTED_BRANDS, Brand
from detection.lookalike.service import (
    LearnedPattern,
    LookalikeDetection,
    LookalikeLearningService,
    LookalikeResult,
    TenantBrand,
)

__all__ = [
    "Brand",
    "HOMOGLYPHS",
    "LearnedPattern",
    "LookalikeDetection",
    "LookalikeLearningService",
    "LookalikeResult",
    "PROTECTED_BRANDS",
    "TenantBrand",
]
