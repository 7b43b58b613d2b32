from detection.analyzers._base import BaseAnalyzer
from detection.analyzers.behavioral import BehavioralAnalyzer
from detection.analyzers.bec import BECAnalyzer
from detection.analyzers.deterministic import DeterministicAnalyzer
from detection.analyzers.llm import LLMAnalyzer
from detection.analyzers.ml import ZeroShotMLAnalyzer
from detection.analyzers.reputation import EnhancedReputationAnalyzer
from detection.analyzers.sandbox import SandboxAnalyzer

__all__ = [
    "BaseAnalyzer",
    "BehavioralAnalyzer",
    "BECAnalyzer",
    "DeterministicAnalyzer",
    "LLMAnalyzer",
    "ZeroShotMLAnalyzer",
    "EnhancedReputationAnalyzer",
    "SandboxAnalyzer",
]
