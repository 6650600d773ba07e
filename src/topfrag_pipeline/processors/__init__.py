"""
Processors that derive match statistics and role scores from stored events.
"""

from .complexion import ComplexionScorer
from .match_aggregator import MatchAggregator

__all__ = ["ComplexionScorer", "MatchAggregator"]
