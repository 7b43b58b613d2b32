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

"""Score aggregation and enhancement."""
from detection.scoring.amplification import (
    AmplificationOptions,
    amplify_first_contact_risk,
    calculate_synergy_bonus,
    identify_compound_patterns,
)
from detection.scoring.engine import EnhancedScore, ScoreOptions, calculate_enhanced_score
from detection.scoring.rules import COMPOUND_PATTERNS, CompoundPattern

__all__ = [
    "AmplificationOptions",
    "COMPOUND_PATTERNS",
    "CompoundPattern",
    "EnhancedScore",
    "ScoreOptions",
    "amplify_first_contact_risk",
    "calculate_enhanced_score",
    "calculate_synergy_bonus",
    "identify_compound_patterns",
]
