from __future__ import annotations

from pathlib import Path

import pytest

from selector_healing.config.loader import ConfigLoader
from selector_healing.logging.trace import InMemoryTraceSink, TraceRecorder


@pytest.fixture()
def suite_config():
    config_path = Path(__file__).resolve().parents[1] / "config" / "test_suite.json"
    return ConfigLoader.load(config_path)


@pytest.fixture()
def trace_sink():
    return InMemoryTraceSink()


@pytest.fixture()
def recorder(trace_sink):
    return TraceRecorder(trace_sink, enabled=True)
