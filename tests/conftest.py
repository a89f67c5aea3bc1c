"""Pytest configuration and fixtures."""

import threading

import pytest
from fastapi.testclient import TestClient

from workflow_core.config import get_testing_config
from workflow_core.core.conditions import ConditionalLogicEngine
from workflow_core.core.execution_engine import ExecutionEngine
from workflow_core.core.graph_manager import GraphManager
from workflow_core.factory import create_app


@pytest.fixture
def config():
    """Engine configuration used by the tests."""
    return get_testing_config()


@pytest.fixture
def conditions():
    """Conditional logic engine with script conditions enabled."""
    return ConditionalLogicEngine(allow_scripts=True, default_max_iterations=100)


@pytest.fixture
def graph_manager():
    """Graph manager backed by the in-memory store."""
    return GraphManager()


@pytest.fixture
def engine(graph_manager, config):
    """Execution engine that is shut down after the test."""
    execution_engine = ExecutionEngine(graph_manager=graph_manager, config=config)
    yield execution_engine
    execution_engine.shutdown()


@pytest.fixture
def events(engine):
    """Every event published by ``engine``, in publication order."""
    received = []
    lock = threading.Lock()

    def collect(event):
        with lock:
            received.append(event)

    engine.events.subscribe(collect)
    return received


@pytest.fixture
def run(engine):
    """Execute a workflow and block until it finishes."""
    def _run(workflow, input=None, options=None, timeout=10):
        execution_id = engine.execute_workflow(workflow, input, options)
        return engine.wait_for_completion(execution_id, timeout=timeout)
    return _run


@pytest.fixture
def client():
    """Test client for an application using in-memory storage."""
    app = create_app(get_testing_config())
    with TestClient(app) as test_client:
        yield test_client
