"""
Complexion Scorer

Scores a player's match on four roles (opener, closer, support, fragger).
Each metric is normalised against its reference value and the role score is
the weighted mean of its normalised metrics.
"""

import json
import logging
import os
from copy import deepcopy
from typing import Any, Dict, Optional

from ..config.complexion_weights import COMPLEXION_METRICS, ROLES


logger = logging.getLogger(__name__)


class MetricTableError(Exception):
    """Raised when a complexion metric table is malformed."""

    pass


def load_metric_table(path: Optional[str] = None) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """
    Load the complexion metric table.

    Args:
        path: JSON file with the same shape as COMPLEXION_METRICS. Defaults to
            the COMPLEXION_WEIGHTS_PATH environment variable, then the built-in table.

    Returns:
        role -> metric -> {"score", "higher_better", "weight"}

    Raises:
        MetricTableError: If a role is missing or a metric entry is invalid
    """
    path = path or os.getenv("COMPLEXION_WEIGHTS_PATH")
    if not path:
        return deepcopy(COMPLEXION_METRICS)

    try:
        with open(path, "r", encoding="utf-8") as f:
            table = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise MetricTableError(f"Cannot read metric table {path}: {e}") from e

    validate_metric_table(table)
    logger.info(f"Loaded complexion metric table from {path}")
    return table


def validate_metric_table(table: Any) -> None:
    if not isinstance(table, dict):
        raise MetricTableError("Metric table must be an object keyed by role")

    for role in ROLES:
        metrics = table.get(role)
        if not isinstance(metrics, dict) or not metrics:
            raise MetricTableError(f"Metric table has no metrics for role '{role}'")

        for name, entry in metrics.items():
            if not isinstance(entry, dict):
                raise MetricTableError(f"{role}.{name} must be an object")
            score = entry.get("score")
            weight = entry.get("weight")
            if not isinstance(score, (int, float)) or score == 0:
                raise MetricTableError(f"{role}.{name} needs a non-zero reference score")
            if not isinstance(weight, (int, float)) or weight <= 0:
                raise MetricTableError(f"{role}.{name} needs a positive weight")
            if not isinstance(entry.get("higher_better"), bool):
                raise MetricTableError(f"{role}.{name}.higher_better must be true or false")


def normalise(value: float, reference: float, higher_better: bool) -> float:
    """
    Normalise a raw metric against its reference.

    Higher-better metrics score value / reference (negative values count as 0).
    Lower-better metrics score reference / value; a value of 0 means the event
    never happened, which scores a neutral 1.0.
    """
    value = float(value or 0)
    if higher_better:
        return max(value, 0.0) / reference
    if value <= 0:
        return 1.0
    return reference / value


def contribution(value: float, entry: Dict[str, Any]) -> float:
    """Weighted normalised value of one metric: weight * normalise(value)."""
    return float(entry["weight"]) * normalise(
        value, float(entry["score"]), entry["higher_better"]
    )


class ComplexionScorer:
    """
    Computes complexion scores from aggregated player metrics.

    Example:
        >>> scorer = ComplexionScorer()
        >>> scorer.score_player(summary["complexion_inputs"])
        {'opener': 1.12, 'closer': 0.87, 'support': 0.64, 'fragger': 1.31}
    """

    def __init__(self, metric_table: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None):
        if metric_table is None:
            metric_table = load_metric_table()
        else:
            validate_metric_table(metric_table)
        self.metric_table = metric_table

    def score_role(self, role: str, metrics: Dict[str, Any]) -> float:
        total_weight = 0.0
        weighted = 0.0
        for name, entry in self.metric_table[role].items():
            weighted += contribution(metrics.get(name, 0), entry)
            total_weight += float(entry["weight"])
        return round(weighted / total_weight, 4)

    def score_player(self, metrics: Dict[str, Any]) -> Dict[str, float]:
        """Score all four roles. Metrics missing from the input count as 0."""
        return {role: self.score_role(role, metrics) for role in ROLES}
