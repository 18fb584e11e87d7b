"""
Collective learning — experiences, patterns, strategy evolution, team prediction.

Core Components:
- models: Experience, Pattern, Strategy
- experience_store: capacity-bounded outcome log with a recognition hook
- pattern_recognizer: recurring successful agent combinations per task type
- evolution: selection / mutation / crossover over a strategy population
- team_predictor: team recommendation from patterns and trust
"""

from .evolution import EvolutionEngine, EvolutionResult
from .experience_store import ExperienceStore
from .models import Experience, Pattern, Strategy
from .pattern_recognizer import PatternRecognizer, RecognitionResult
from .team_predictor import (
    TaskFeatures,
    TeamMember,
    TeamOption,
    TeamPrediction,
    TeamPredictor,
    extract_features,
)

__all__ = [
    "EvolutionEngine",
    "EvolutionResult",
    "Experience",
    "ExperienceStore",
    "Pattern",
    "PatternRecognizer",
    "RecognitionResult",
    "Strategy",
    "TaskFeatures",
    "TeamMember",
    "TeamOption",
    "TeamPrediction",
    "TeamPredictor",
    "extract_features",
]
