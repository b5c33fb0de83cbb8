"""
Tests for ModelMonitor metrics.
"""

from datetime import datetime, timedelta

import pytest

from breachradar.db.repositories import TrainingRunRepository
from breachradar.ml.feedback import FeedbackStore
from breachradar.ml.monitoring import ModelMonitor
from breachradar.ml.schemas import ModelStatus, WeightsFormat
from breachradar.ml.serving import PredictionService

from fakes import ORG_ID, activate_model


@pytest.fixture
def service(scorer, directory, chain, session_scope):
    return PredictionService(scorer, directory, chain=chain, session_scope=session_scope)


@pytest.fixture
def monitor(service, session_scope):
    return ModelMonitor(service.registry, session_scope=session_scope)


def submit(service, session_scope, feedback_types):
    store = FeedbackStore(session_scope)
    prediction = service.predict_breach("prop-1", ORG_ID)
    for i, feedback_type in enumerate(feedback_types):
        corrected = None if feedback_type == "CORRECT" else 80
        store.submit_feedback(prediction.prediction_id, ORG_ID, feedback_type, corrected_score=corrected, notes=f"review {i}")


def add_runs(session_scope, model_id, count, status="ACTIVE"):
    start = datetime(2024, 1, 1)
    with session_scope() as db:
        runs = TrainingRunRepository(db)
        for i in range(count):
            runs.create(
                organisation_id=ORG_ID,
                model_id=model_id,
                status=status,
                learning_rate=0.001,
                epochs=100,
                batch_size=32,
                current_epoch=0,
                training_progress=0,
                started_at=start + timedelta(hours=i),
            )


class TestModelMetrics:
    """Tests for get_model_metrics."""

    def test_new_model(self, monitor):
        """Test a fresh model reports no accuracy and is not ready."""
        metrics = monitor.get_model_metrics(ORG_ID)

        assert metrics.model.status == ModelStatus.TRAINING
        assert metrics.model.accuracy is None
        assert metrics.model.total_predictions == 0
        assert metrics.feedback_stats.total == 0
        assert metrics.training_ready is False
        assert metrics.recent_training_runs == []

    def test_not_ready_below_threshold(self, monitor, service, session_scope):
        """Test nine feedback rows are not enough to train."""
        submit(service, session_scope, ["CORRECT"] * 6 + ["INCORRECT"] * 3)

        metrics = monitor.get_model_metrics(ORG_ID)

        assert metrics.feedback_stats.total == 9
        assert metrics.training_ready is False

    def test_ready_at_threshold(self, monitor, service, session_scope):
        """Test ten feedback rows make the model ready to train."""
        submit(service, session_scope, ["CORRECT"] * 6 + ["INCORRECT"] * 3 + ["PARTIALLY_CORRECT"])

        metrics = monitor.get_model_metrics(ORG_ID)

        assert metrics.feedback_stats.total == 10
        assert metrics.feedback_stats.correct == 6
        assert metrics.feedback_stats.incorrect == 3
        assert metrics.training_ready is True

    def test_accuracy_from_feedback(self, monitor, service, session_scope):
        """Test accuracy ignores partially correct feedback."""
        submit(service, session_scope, ["CORRECT"] * 3 + ["INCORRECT"] + ["PARTIALLY_CORRECT"] * 2)

        metrics = monitor.get_model_metrics(ORG_ID)

        assert metrics.model.accuracy == pytest.approx(0.75)
        assert metrics.model.correct_predictions == 3
        assert metrics.model.total_predictions == 1

    def test_accuracy_falls_back_to_training_accuracy(self, monitor, service, session_scope):
        """Test training accuracy is used as a fraction without feedback."""
        model_id = service.registry.get_snapshot(ORG_ID).model_id
        activate_model(session_scope, model_id, WeightsFormat.TORCH_TENSORS_V1, training_accuracy=82.0)

        metrics = monitor.get_model_metrics(ORG_ID)

        assert metrics.model.accuracy == pytest.approx(0.82)
        assert metrics.model.training_accuracy == 82.0
        assert metrics.model.status == ModelStatus.ACTIVE

    def test_recent_runs_limited_and_newest_first(self, monitor, service, session_scope):
        """Test only the ten most recent runs are reported."""
        model_id = service.registry.get_snapshot(ORG_ID).model_id
        add_runs(session_scope, model_id, 12)

        runs = monitor.get_model_metrics(ORG_ID).recent_training_runs

        assert len(runs) == 10
        assert runs[0].started_at > runs[-1].started_at
        assert runs[0].id == 12


class TestListTrainingRuns:
    """Tests for list_training_runs."""

    def test_lists_organisation_runs(self, monitor, service, session_scope):
        """Test runs are scoped to the organisation and limited."""
        add_runs(session_scope, service.registry.get_snapshot(ORG_ID).model_id, 5)
        add_runs(session_scope, service.registry.get_snapshot("org-other").model_id, 2)

        runs = monitor.list_training_runs(ORG_ID, limit=3)

        assert len(runs) == 3
        assert {run.status for run in runs} == {ModelStatus.ACTIVE}

    def test_failed_runs_carry_status(self, monitor, service, session_scope):
        """Test failed runs are reported with their status."""
        add_runs(session_scope, service.registry.get_snapshot(ORG_ID).model_id, 1, status="FAILED")

        runs = monitor.list_training_runs(ORG_ID)

        assert [run.status for run in runs] == [ModelStatus.FAILED]
