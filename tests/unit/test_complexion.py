"""Unit tests for complexion scoring."""

import json

import pytest

from topfrag_pipeline.config.complexion_weights import COMPLEXION_METRICS, ROLES
from topfrag_pipeline.processors.complexion import (
    ComplexionScorer,
    MetricTableError,
    contribution,
    load_metric_table,
    normalise,
)


class TestNormalise:
    """Test metric normalisation against reference values."""

    def test_higher_better_contribution(self):
        """score 50, weight 2, value 100 -> 2 * (100 / 50) = 4"""
        entry = {"score": 50, "higher_better": True, "weight": 2}

        assert contribution(100, entry) == pytest.approx(4.0)

    def test_lower_better_contribution(self):
        """score 50, weight 2, value 100 -> 2 * (50 / 100) = 1"""
        entry = {"score": 50, "higher_better": False, "weight": 2}

        assert contribution(100, entry) == pytest.approx(1.0)

    def test_at_reference_is_one(self):
        assert normalise(25, 25, True) == 1.0
        assert normalise(25, 25, False) == 1.0

    def test_negative_higher_better_clamped(self):
        assert normalise(-3, 3, True) == 0.0

    def test_lower_better_zero_is_neutral(self):
        assert normalise(0, 20, False) == 1.0

    def test_none_treated_as_zero(self):
        assert normalise(None, 10, True) == 0.0


class TestMetricTable:
    """Test loading and validating metric tables."""

    def test_default_table(self, monkeypatch):
        monkeypatch.delenv("COMPLEXION_WEIGHTS_PATH", raising=False)

        table = load_metric_table()

        assert set(table) == set(ROLES)
        assert table["fragger"]["kill_death_ratio"]["score"] == 1.5

    def test_default_table_is_a_copy(self, monkeypatch):
        monkeypatch.delenv("COMPLEXION_WEIGHTS_PATH", raising=False)

        table = load_metric_table()
        table["opener"]["first_kill_attempts"]["weight"] = 99

        assert COMPLEXION_METRICS["opener"]["first_kill_attempts"]["weight"] == 4.0

    def test_load_from_file(self, tmp_path):
        table = json.loads(json.dumps(COMPLEXION_METRICS))
        table["support"]["total_grenades_thrown"]["weight"] = 7.0
        path = tmp_path / "weights.json"
        path.write_text(json.dumps(table))

        loaded = load_metric_table(str(path))

        assert loaded["support"]["total_grenades_thrown"]["weight"] == 7.0

    def test_load_from_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "weights.json"
        path.write_text(json.dumps(COMPLEXION_METRICS))
        monkeypatch.setenv("COMPLEXION_WEIGHTS_PATH", str(path))

        assert load_metric_table() == COMPLEXION_METRICS

    def test_zero_reference_rejected(self, tmp_path):
        table = json.loads(json.dumps(COMPLEXION_METRICS))
        table["closer"]["total_clutch_attempts"]["score"] = 0
        path = tmp_path / "weights.json"
        path.write_text(json.dumps(table))

        with pytest.raises(MetricTableError, match="closer.total_clutch_attempts"):
            load_metric_table(str(path))

    def test_missing_role_rejected(self):
        table = {role: metrics for role, metrics in COMPLEXION_METRICS.items() if role != "support"}

        with pytest.raises(MetricTableError, match="support"):
            ComplexionScorer(table)

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "weights.json"
        path.write_text("{not json")

        with pytest.raises(MetricTableError, match="Cannot read"):
            load_metric_table(str(path))


class TestComplexionScorer:
    """Test role scores."""

    def test_weighted_mean(self):
        table = {
            role: {"metric_a": {"score": 10, "higher_better": True, "weight": 1.0}}
            for role in ROLES
        }
        table["fragger"] = {
            "metric_a": {"score": 50, "higher_better": True, "weight": 2.0},
            "metric_b": {"score": 50, "higher_better": False, "weight": 2.0},
        }
        scorer = ComplexionScorer(table)

        # (4 + 1) / (2 + 2)
        assert scorer.score_role("fragger", {"metric_a": 100, "metric_b": 100}) == 1.25

    def test_score_player_returns_all_roles(self):
        scorer = ComplexionScorer(COMPLEXION_METRICS)

        scores = scorer.score_player({})

        assert set(scores) == {"opener", "closer", "support", "fragger"}

    def test_reference_player_scores_one(self):
        scorer = ComplexionScorer(COMPLEXION_METRICS)
        metrics = {
            name: entry["score"]
            for role in ROLES
            for name, entry in COMPLEXION_METRICS[role].items()
        }

        scores = scorer.score_player(metrics)

        assert scores == {role: 1.0 for role in ROLES}
