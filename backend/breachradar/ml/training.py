"""
Training orchestrator - retrains an organisation's breach model from feedback.

A run gathers unused reviewer feedback as labelled examples, tops it up with
fresh statistical pairs when feedback is scarce, trains the primary backend
(falling back to the next strategy from scratch if it fails) and swaps the
new weights in with a single transaction. A failed run never touches the
model's existing weights.

Only one run per (organisation, prediction type) executes at a time. Runs can
execute synchronously (trigger_training) or on a worker pool (submit_training)
and can be cancelled between epochs.
"""

import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from breachradar.config import settings
from breachradar.db.models import MLFeedback, MLPrediction
from breachradar.db.repositories import FeedbackRepository, ModelRepository, TrainingRunRepository
from breachradar.db.session import SessionScope, get_db_context
from breachradar.log_config import get_logger, logger
from breachradar.ml.backends import BackendStrategy, ModelSnapshot, default_backend_strategies
from breachradar.ml.blending import round_half_up
from breachradar.ml.features import FeatureExtractor, to_feature_vector, vector_from_snapshot
from breachradar.ml.registry import ModelRegistry
from breachradar.ml.schemas import (
    FeedbackType,
    ModelConfig,
    ModelStatus,
    PredictionType,
    TrainingConfig,
    TrainingExample,
    TrainingOutcome,
    TrainingResult,
)
from breachradar.scoring.protocols import PortfolioDirectory
from breachradar.utils.cache import ModelCache
from breachradar.utils.errors import (
    ConfigurationError,
    InsufficientTrainingDataError,
    TrainingCancelledError,
    TrainingError,
    TrainingInProgressError,
)


log = get_logger(__name__)

CANCELLED_MESSAGE = "Training cancelled"
DEFAULT_CORRECT_TARGET = 50

RunKey = Tuple[str, str]


@dataclass
class _RunContext:
    run_id: int
    model_id: int
    organisation_id: str
    prediction_type: PredictionType
    config: TrainingConfig
    cancel_event: threading.Event


@dataclass
class TrainingData:
    """Examples for one run, the feedback rows they came from and the rows skipped."""
    examples: List[TrainingExample]
    feedback_ids: List[int]
    skipped_ids: List[int] = field(default_factory=list)
    bootstrapped: int = 0

    @property
    def skipped_feedback(self) -> int:
        return len(self.skipped_ids)

    @property
    def consumed_ids(self) -> List[int]:
        """Every fetched feedback row, so the next run reads past this batch."""
        return self.feedback_ids + self.skipped_ids


class TrainingOrchestrator:
    """Runs, tracks and cancels model retraining."""

    def __init__(
        self,
        feature_extractor: FeatureExtractor,
        directory: Optional[PortfolioDirectory] = None,
        registry: Optional[ModelRegistry] = None,
        strategies: Optional[Sequence[BackendStrategy]] = None,
        cache: Optional[ModelCache] = None,
        session_scope: SessionScope = get_db_context,
        executor: Optional[Executor] = None,
    ):
        self.features = feature_extractor
        self.directory = directory if directory is not None else feature_extractor.directory
        self.session_scope = session_scope
        self.registry = registry or ModelRegistry(session_scope)
        self.strategies = list(strategies) if strategies is not None else default_backend_strategies()
        self.cache = cache
        self._executor = executor
        self._guard = threading.Lock()
        self._locks: Dict[RunKey, threading.Lock] = {}
        self._cancel_events: Dict[RunKey, threading.Event] = {}

    @property
    def executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=settings.ml_training_workers,
                thread_name_prefix="breach-training",
            )
        return self._executor

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def trigger_training(
        self,
        organisation_id: str,
        overrides: Optional[Dict[str, Any]] = None,
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> TrainingOutcome:
        """
        Retrain an organisation's model and wait for the result.

        Args:
            organisation_id: Organisation whose model is retrained
            overrides: Per-run hyperparameters (learning_rate, epochs, batch_size, validation_split)
            prediction_type: Model to retrain

        Returns:
            TrainingOutcome for the completed run

        Raises:
            TrainingInProgressError: A run for this model is already executing
            TrainingError: The run failed; it has been recorded as FAILED
        """
        key = (organisation_id, prediction_type.value)
        lock = self._acquire(key)
        try:
            context = self._open_run(key, organisation_id, prediction_type, overrides)
            return self._execute(context)
        finally:
            self._release(key, lock)

    def submit_training(
        self,
        organisation_id: str,
        overrides: Optional[Dict[str, Any]] = None,
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> Tuple[int, Future]:
        """
        Open a run now and execute it in the background.

        Returns:
            (run_id, future) where the future resolves to the TrainingOutcome
        """
        key = (organisation_id, prediction_type.value)
        lock = self._acquire(key)
        try:
            context = self._open_run(key, organisation_id, prediction_type, overrides)
        except Exception:
            self._release(key, lock)
            raise

        def run() -> TrainingOutcome:
            try:
                return self._execute(context)
            finally:
                self._release(key, lock)

        try:
            future = self.executor.submit(run)
        except Exception as e:
            self._release(key, lock)
            self._record_failure(context, e)
            raise
        return context.run_id, future

    def cancel_training(
        self,
        organisation_id: str,
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> bool:
        """Ask a running training run to stop before its next epoch. Returns False if none is running."""
        key = (organisation_id, prediction_type.value)
        with self._guard:
            event = self._cancel_events.get(key)
        if event is None:
            return False
        event.set()
        log.info("training_cancel_requested", organisation_id=organisation_id, prediction_type=key[1])
        return True

    def is_training(
        self,
        organisation_id: str,
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> bool:
        with self._guard:
            return (organisation_id, prediction_type.value) in self._cancel_events

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _acquire(self, key: RunKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        if not lock.acquire(blocking=False):
            raise TrainingInProgressError(
                f"Training already in progress for {key[0]}/{key[1]}",
                details={"organisation_id": key[0], "prediction_type": key[1]},
            )
        return lock

    def _release(self, key: RunKey, lock: threading.Lock) -> None:
        with self._guard:
            self._cancel_events.pop(key, None)
        lock.release()

    def _open_run(
        self,
        key: RunKey,
        organisation_id: str,
        prediction_type: PredictionType,
        overrides: Optional[Dict[str, Any]],
    ) -> _RunContext:
        with self.session_scope() as db:
            model = self.registry.get_or_create_model(db, organisation_id, prediction_type)
            config = self.registry.training_config_for(model, overrides)
            run = TrainingRunRepository(db).create(
                organisation_id=organisation_id,
                model_id=model.id,
                status=ModelStatus.TRAINING.value,
                learning_rate=config.learning_rate,
                epochs=config.epochs,
                batch_size=config.batch_size,
                validation_split=config.validation_split,
                current_epoch=0,
                training_progress=0,
                started_at=datetime.utcnow(),
            )
            run_id, model_id = run.id, model.id

        cancel_event = threading.Event()
        with self._guard:
            self._cancel_events[key] = cancel_event

        log.info(
            "training_run_started",
            run_id=run_id,
            model_id=model_id,
            organisation_id=organisation_id,
            prediction_type=prediction_type.value,
            epochs=config.epochs,
            learning_rate=config.learning_rate,
        )
        return _RunContext(run_id, model_id, organisation_id, prediction_type, config, cancel_event)

    def _execute(self, context: _RunContext) -> TrainingOutcome:
        try:
            snapshot = self._model_snapshot(context.model_id)
            data = self.collect_training_data(
                context.organisation_id,
                context.prediction_type,
                snapshot.config,
            )
            if not data.examples:
                raise InsufficientTrainingDataError(
                    "No usable training examples from feedback or bootstrap",
                    details={"organisation_id": context.organisation_id},
                )

            strategy, backend, result = self._train_with_fallback(context, snapshot, data.examples)
            self._swap_weights(context, strategy, backend, result, data.consumed_ids)
        except Exception as e:
            self._record_failure(context, e)
            raise

        if self.cache is not None:
            self.cache.invalidate(context.model_id)

        log.info(
            "training_run_completed",
            run_id=context.run_id,
            model_id=context.model_id,
            backend=strategy.name,
            accuracy=result.final_accuracy,
            loss=result.final_loss,
            examples=len(data.examples),
            feedback_used=len(data.feedback_ids),
            feedback_skipped=data.skipped_feedback,
            bootstrapped=data.bootstrapped,
        )

        return TrainingOutcome(
            success=True,
            model_id=context.model_id,
            run_id=context.run_id,
            accuracy=result.final_accuracy,
            epoch_history=result.epoch_history,
            backend=strategy.name,
        )

    def _model_snapshot(self, model_id: int) -> ModelSnapshot:
        with self.session_scope() as db:
            return ModelSnapshot.from_record(ModelRepository(db).get_by_id(model_id))

    # ------------------------------------------------------------------
    # Training data
    # ------------------------------------------------------------------

    def collect_training_data(
        self,
        organisation_id: str,
        prediction_type: PredictionType,
        model_config: ModelConfig,
    ) -> TrainingData:
        """
        Build examples from unused feedback, bootstrapping when there are too few.

        CORRECT feedback trains towards the prediction's statistical score.
        Other feedback needs a corrected score and is skipped without one.
        Skipped rows are still marked used when the run succeeds.
        """
        names = model_config.input_features
        data = TrainingData(examples=[], feedback_ids=[])

        with self.session_scope() as db:
            rows = FeedbackRepository(db).list_unused(
                organisation_id,
                prediction_type.value,
                limit=settings.ml_feedback_batch_limit,
            )
            for feedback, prediction in rows:
                example = self._example_from_feedback(feedback, prediction, names)
                if example is None:
                    data.skipped_ids.append(feedback.id)
                    continue
                data.examples.append(example)
                data.feedback_ids.append(feedback.id)

        if data.skipped_feedback:
            logger.warning(
                f"Skipped {data.skipped_feedback} feedback rows for organisation {organisation_id} "
                f"with no usable target or features"
            )

        if len(data.examples) < settings.ml_min_training_examples:
            data.bootstrapped = self._bootstrap(organisation_id, names, data.examples)

        logger.info(
            f"Collected {len(data.examples)} training examples for {organisation_id} "
            f"({len(data.feedback_ids)} from feedback, {data.bootstrapped} bootstrapped)"
        )
        return data

    @staticmethod
    def _example_from_feedback(
        feedback: MLFeedback,
        prediction: MLPrediction,
        feature_names: Sequence[str],
    ) -> Optional[TrainingExample]:
        if feedback.feedback_type == FeedbackType.CORRECT.value:
            target = prediction.statistical_score if prediction.statistical_score is not None else DEFAULT_CORRECT_TARGET
        elif feedback.corrected_score is not None:
            target = feedback.corrected_score
        else:
            logger.debug(
                f"Feedback {feedback.id} ({feedback.feedback_type}) has no corrected score; skipping"
            )
            return None

        if not prediction.input_features:
            logger.debug(f"Prediction {prediction.id} has no stored features; skipping feedback {feedback.id}")
            return None

        try:
            vector = vector_from_snapshot(prediction.input_features, feature_names)
        except ConfigurationError as e:
            logger.warning(f"Feedback {feedback.id} on prediction {prediction.id} skipped: {e.message}")
            return None

        return TrainingExample(features=vector, target=float(target))

    def _bootstrap(
        self,
        organisation_id: str,
        feature_names: Sequence[str],
        examples: List[TrainingExample],
    ) -> int:
        if self.directory is None:
            logger.warning(f"No portfolio directory; cannot bootstrap training data for {organisation_id}")
            return 0

        entity_ids = self.directory.list_entity_ids(organisation_id, settings.ml_bootstrap_entity_limit)
        added = 0
        for entity_id in entity_ids[: settings.ml_bootstrap_entity_limit]:
            statistical = self.features.compute_statistical_prediction(entity_id, organisation_id)
            features = self.features.extract_features(entity_id, organisation_id, risk=statistical.risk)
            examples.append(
                TrainingExample(
                    features=to_feature_vector(features, feature_names),
                    target=float(statistical.score),
                )
            )
            added += 1
        return added

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def _train_with_fallback(
        self,
        context: _RunContext,
        snapshot: ModelSnapshot,
        examples: Sequence[TrainingExample],
    ) -> Tuple[BackendStrategy, Any, TrainingResult]:
        if not self.strategies:
            raise ConfigurationError("No training backends configured")

        last_error: Optional[Exception] = None
        for index, strategy in enumerate(self.strategies):
            backend = strategy.factory(snapshot.config)
            if index == 0:
                self._seed(strategy, backend, snapshot)

            try:
                result = backend.train(
                    examples,
                    context.config,
                    on_progress=self._progress_reporter(context),
                    cancel_event=context.cancel_event,
                    progress_interval=settings.ml_progress_interval,
                )
            except TrainingCancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.error(
                    f"{strategy.name} backend training failed for model {context.model_id} "
                    f"(run {context.run_id}): {e}"
                )
                log.warning(
                    "training_backend_failed",
                    run_id=context.run_id,
                    model_id=context.model_id,
                    backend=strategy.name,
                    error=str(e),
                )
                continue

            return strategy, backend, result

        raise TrainingError(
            f"All training backends failed: {last_error}",
            details={"backends": [s.name for s in self.strategies]},
        ) from last_error

    @staticmethod
    def _seed(strategy: BackendStrategy, backend: Any, snapshot: ModelSnapshot) -> None:
        if snapshot.weights is None or not strategy.accepts(snapshot.weights.format):
            return
        if backend.load_weights(snapshot.weights):
            logger.info(f"Seeded {strategy.name} backend with model {snapshot.model_id} revision {snapshot.revision}")
        else:
            logger.warning(
                f"Existing weights for model {snapshot.model_id} did not load; training {strategy.name} from scratch"
            )

    def _progress_reporter(self, context: _RunContext):
        def on_progress(epoch: int, loss: float, accuracy: float) -> None:
            progress = min(100, round_half_up(epoch / context.config.epochs * 100))
            with self.session_scope() as db:
                TrainingRunRepository(db).update(
                    context.run_id,
                    current_epoch=epoch,
                    training_progress=progress,
                )
                ModelRepository(db).update(context.model_id, training_progress=progress)
            log.debug(
                "training_progress",
                run_id=context.run_id,
                epoch=epoch,
                loss=loss,
                accuracy=accuracy,
                progress=progress,
            )

        return on_progress

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _swap_weights(
        self,
        context: _RunContext,
        strategy: BackendStrategy,
        backend: Any,
        result: TrainingResult,
        feedback_ids: Sequence[int],
    ) -> None:
        weights = backend.export_weights()
        now = datetime.utcnow()

        with self.session_scope() as db:
            models = ModelRepository(db)
            model = models.get_by_id(context.model_id)
            models.update(
                context.model_id,
                model_weights=weights.payload,
                weights_format=weights.format.value,
                weights_revision=(model.weights_revision or 0) + 1,
                status=ModelStatus.ACTIVE.value,
                training_accuracy=result.final_accuracy,
                training_loss=result.final_loss,
                validation_accuracy=result.validation_accuracy,
                validation_loss=result.validation_loss,
                training_samples=result.training_samples,
                training_progress=100,
                last_trained_at=now,
            )
            FeedbackRepository(db).mark_used(feedback_ids, context.run_id)
            TrainingRunRepository(db).update(
                context.run_id,
                status=ModelStatus.ACTIVE.value,
                backend=strategy.name,
                current_epoch=len(result.epoch_history),
                training_progress=100,
                training_samples=result.training_samples,
                validation_samples=result.validation_samples,
                final_accuracy=result.final_accuracy,
                final_loss=result.final_loss,
                epoch_history=[record.model_dump() for record in result.epoch_history],
                completed_at=now,
            )

    def _record_failure(self, context: _RunContext, error: Exception) -> None:
        message = CANCELLED_MESSAGE if isinstance(error, TrainingCancelledError) else str(error) or type(error).__name__
        try:
            with self.session_scope() as db:
                TrainingRunRepository(db).update(
                    context.run_id,
                    status=ModelStatus.FAILED.value,
                    error_message=message,
                    completed_at=datetime.utcnow(),
                )
        except Exception as e:
            logger.error(f"Could not record failure of training run {context.run_id}: {e}")

        log.error(
            "training_run_failed",
            run_id=context.run_id,
            model_id=context.model_id,
            organisation_id=context.organisation_id,
            error=message,
        )
