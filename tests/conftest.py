import logging

import pytest

from ble_agent.engine import AgentConfig, SessionEngine

from fakes import FakeAdapter, FakeScheduler


@pytest.fixture(autouse=True)
def _debug_logging(caplog):
    caplog.set_level(logging.DEBUG, logger="ble_agent")


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def make_engine(scheduler):
    """Build an engine over a FakeAdapter driven by the manual scheduler."""

    def factory(adapter=None, **config):
        adapter = adapter or FakeAdapter()
        engine = SessionEngine(adapter, AgentConfig(**config), schedule=scheduler)
        return engine, adapter

    return factory
