"""Query evolution: evaluate phrasings and promote the best one.

Provides:
- EvaluationEngine (evaluate, generate_variation, run_cycle, campaigns)
- StoppingPolicy for bounded campaigns
"""

from querylab.evaluation.engine import (
    CampaignResult,
    CycleResult,
    EvaluationEngine,
    GroupOutcome,
)
from querylab.evaluation.stopping import StoppingPolicy, StoppingTracker

__all__ = [
    "EvaluationEngine",
    "CycleResult",
    "CampaignResult",
    "GroupOutcome",
    "StoppingPolicy",
    "StoppingTracker",
]
