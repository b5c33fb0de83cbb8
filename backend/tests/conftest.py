"""
Shared pytest fixtures for the Breach Radar test suite.

Provides an in-memory SQLite database, a session scope bound to it, fake
statistical scorer and portfolio directory collaborators, and scripted
backends for exercising the fallback chain and training orchestrator.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from breachradar.db.models import Base
from breachradar.db.session import build_engine, make_session_scope
from breachradar.ml.backends import BackendChain
from breachradar.ml.schemas import WeightsFormat
from breachradar.scoring.protocols import EntityHistory
from breachradar.utils.cache import ModelCache

from fakes import FakeBackend, FakeDirectory, FakeScorer, fake_strategy


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads."""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_scope(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return make_session_scope(factory)


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def directory():
    return FakeDirectory(
        histories={
            "prop-0": EntityHistory(last_certificate_issued=date(2024, 1, 1), open_actions=3, historical_breaches=1),
        }
    )


@pytest.fixture
def tensor_backend():
    return FakeBackend("tensor", WeightsFormat.TORCH_TENSORS_V1, score=60.0)


@pytest.fixture
def dense_backend():
    return FakeBackend("dense", WeightsFormat.DENSE_LAYERS_V1, score=40.0)


@pytest.fixture
def chain(tensor_backend, dense_backend):
    """Backend chain over the two fake backends, run inline."""
    executor = ThreadPoolExecutor(max_workers=1)
    chain = BackendChain(
        strategies=[
            fake_strategy(tensor_backend, base_confidence=40, timeout_seconds=5.0),
            fake_strategy(dense_backend, base_confidence=30),
        ],
        cache=ModelCache(),
        executor=executor,
    )
    yield chain
    chain.shutdown()
