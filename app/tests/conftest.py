"""Shared fixtures: in-memory collaborators and a processor wired to them"""
import pytest
from datetime import datetime

from models import Action, Video, ViewEvent
from processor import EventProcessor
from stores import MemoryAffinityStore, MemoryCatalog, MemoryEventStore

NOW = datetime(2025, 8, 1, 12, 0, 0)

VIDEOS = [
    Video(video_id="a1", title="Action One", category="Action", duration=5400, views=500),
    Video(video_id="a2", title="Action Two", category="Action", duration=6000, views=400),
    Video(video_id="a3", title="Action Three", category="Action", duration=5100, views=300),
    Video(video_id="c1", title="Comedy One", category="Comedy", duration=3600, views=450),
    Video(video_id="c2", title="Comedy Two", category="Comedy", duration=3300, views=450),
    Video(video_id="d1", title="Drama One", category="Drama", duration=7200, views=100),
    Video(video_id="s1", title="SciFi One", category="SciFi", duration=6600, views=1000),
    Video(video_id="s2", title="SciFi Two", category="SciFi", duration=6900, views=50),
]


def make_event(event_id, user_id="u1", video_id="a1", action=Action.WATCH,
               duration=100, timestamp=None, **kwargs) -> ViewEvent:
    return ViewEvent(
        event_id=event_id,
        user_id=user_id,
        video_id=video_id,
        action=action,
        duration=duration,
        timestamp=timestamp,
        **kwargs
    )


@pytest.fixture
def store():
    return MemoryEventStore()


@pytest.fixture
def catalog():
    return MemoryCatalog(VIDEOS)


@pytest.fixture
def affinity():
    return MemoryAffinityStore()


@pytest.fixture
def processor(store, catalog, affinity):
    return EventProcessor(store, catalog, affinity)
