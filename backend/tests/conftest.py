"""
Pytest configuration for the mediajobs test suite.
"""

import logging
import sys
from pathlib import Path

import pytest

# Add backend to Python path for test imports
backend_path = Path(__file__).parent.parent
if str(backend_path) not in sys.path:
    sys.path.insert(0, str(backend_path))

from mediajobs.jobs.events import EventBus  # noqa: E402
from mediajobs.jobs.queue import JobQueue  # noqa: E402


class EventCollector:
    """Listener that records every event it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def types(self, job_id=None):
        return [e.type.value for e in self.events if job_id is None or e.job_id == job_id]

    def of_type(self, event_type):
        return [e for e in self.events if e.type.value == event_type]


@pytest.fixture
def queue():
    return JobQueue(event_bus=EventBus())


@pytest.fixture
def collector(queue):
    events = EventCollector()
    queue.subscribe(events)
    return events


@pytest.fixture(autouse=True)
def _quiet_pipeline_logger():
    # JobLog may lower the pipeline logger's level; restore it between tests
    pipeline = logging.getLogger("mediajobs.pipeline")
    level = pipeline.level
    yield
    pipeline.setLevel(level)
    for handler in list(pipeline.handlers):
        pipeline.removeHandler(handler)
        handler.close()
