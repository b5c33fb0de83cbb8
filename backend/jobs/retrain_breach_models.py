"""
Breach model retraining job.

Retrains the breach prediction model for each given organisation from the
feedback collected since its last run. The statistical scorer and portfolio
directory are supplied by the host application as import paths.

Examples:
  python3 backend/jobs/retrain_breach_models.py org-1 org-2 \
      --scorer myapp.risk:scorer --directory myapp.portfolio:PortfolioDirectory
"""

import argparse
import importlib
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from breachradar.db.session import get_db_transaction, init_db
from breachradar.log_config import logger
from breachradar.ml.features import FeatureExtractor
from breachradar.ml.training import TrainingOrchestrator
from breachradar.utils.errors import BreachRadarError, TrainingInProgressError


def load_object(path: str) -> Any:
    """
    Resolve a ``module:attr`` import path.

    Classes are instantiated with no arguments; any other attribute is
    returned as is.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:attr', got {path!r}")

    module = importlib.import_module(module_name)
    obj = getattr(module, attr)
    if isinstance(obj, type):
        obj = obj()
    return obj


def retrain_organisations(
    organisation_ids: List[str],
    orchestrator: TrainingOrchestrator,
    overrides: Optional[Dict[str, Any]] = None,
) -> dict:
    """
    Retrain each organisation's model in turn.

    Returns:
        Statistics dict with per-organisation results
    """
    stats = {
        "started_at": datetime.utcnow().isoformat(),
        "trained": 0,
        "skipped": 0,
        "failed": 0,
        "results": {},
        "success": True,
    }

    for organisation_id in organisation_ids:
        try:
            outcome = orchestrator.trigger_training(organisation_id, overrides=overrides)
        except TrainingInProgressError as e:
            logger.warning(f"Skipping {organisation_id}: {e.message}")
            stats["skipped"] += 1
            stats["results"][organisation_id] = {"status": "skipped", "error": e.message}
            continue
        except BreachRadarError as e:
            logger.error(f"Retraining failed for {organisation_id}: {e.message}")
            stats["failed"] += 1
            stats["results"][organisation_id] = {"status": "failed", "error": e.message}
            continue
        except Exception as e:
            logger.exception(f"Unexpected error retraining {organisation_id}: {e}")
            stats["failed"] += 1
            stats["results"][organisation_id] = {"status": "failed", "error": str(e)}
            continue

        logger.info(
            f"Retrained model {outcome.model_id} for {organisation_id} with {outcome.backend} "
            f"backend: accuracy {outcome.accuracy:.1f}%"
        )
        stats["trained"] += 1
        stats["results"][organisation_id] = {
            "status": "trained",
            "model_id": outcome.model_id,
            "run_id": outcome.run_id,
            "accuracy": outcome.accuracy,
            "backend": outcome.backend,
        }

    stats["completed_at"] = datetime.utcnow().isoformat()
    stats["success"] = stats["failed"] == 0
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Retrain breach prediction models from reviewer feedback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("organisations", nargs="+", help="Organisation ids to retrain")
    parser.add_argument(
        "--scorer",
        required=True,
        help="Import path of the statistical scorer, as module:attr",
    )
    parser.add_argument(
        "--directory",
        default=None,
        help="Import path of the portfolio directory, as module:attr",
    )
    parser.add_argument("--epochs", type=int, default=None, help="Override training epochs")
    parser.add_argument("--learning-rate", type=float, default=None, help="Override learning rate")
    parser.add_argument("--batch-size", type=int, default=None, help="Override batch size")
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before training",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI execution."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.epochs is not None and args.epochs < 1:
        parser.error("Epochs must be at least 1")
    if args.batch_size is not None and args.batch_size < 1:
        parser.error("Batch size must be at least 1")
    if args.learning_rate is not None and args.learning_rate <= 0:
        parser.error("Learning rate must be positive")

    try:
        scorer = load_object(args.scorer)
        directory = load_object(args.directory) if args.directory else None
    except (ImportError, AttributeError, ValueError) as e:
        parser.error(f"Could not load collaborator: {e}")

    if args.init_db:
        init_db()

    orchestrator = TrainingOrchestrator(
        FeatureExtractor(scorer, directory),
        session_scope=get_db_transaction,
    )
    overrides = {
        "epochs": args.epochs,
        "learning_rate": args.learning_rate,
        "batch_size": args.batch_size,
    }

    logger.info(f"Starting breach model retraining for {len(args.organisations)} organisations")
    stats = retrain_organisations(args.organisations, orchestrator, overrides)
    logger.info(
        f"Retraining finished: {stats['trained']} trained, {stats['skipped']} skipped, "
        f"{stats['failed']} failed"
    )
    return 0 if stats["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
