"""
Root conftest.py for the audio diagnostics tests.

This file contains shared fixtures and pytest configuration
that applies to all test modules.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Keep the app config folder out of the user's home for the whole session.
os.environ.setdefault("AUDIOVIZ_CONFIG", tempfile.mkdtemp(prefix="audioviz-config-"))

# Ensure the project root is in the path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from api.analysis_intents import build_analysis_intent
from api.calculator_registry import create_default_registry
from api.diagnostics_store import DiagnosticsStore
from api.timeline_store import TimelineStore


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "websocket: mark test as involving WebSocket communication",
    )
    config.addinivalue_line(
        "markers",
        "api: mark test as going through the HTTP layer",
    )


def pytest_collection_modifyitems(config, items):
    """Mark WebSocket tests by name."""
    for item in items:
        if "websocket" in item.name.lower():
            item.add_marker(pytest.mark.websocket)


# ============================================================================
# Shared Fixtures
# ============================================================================


SPECTROGRAM = {"feature_key": "spectrogram", "calculator_id": "mvmnt.spectrogram"}
RMS = {"feature_key": "rms", "calculator_id": "mvmnt.rms"}
WAVEFORM = {"feature_key": "waveform", "calculator_id": "mvmnt.waveform"}


@pytest.fixture
def registry():
    return create_default_registry()


@pytest.fixture
def timeline():
    return TimelineStore()


@pytest.fixture
def store(registry, timeline):
    return DiagnosticsStore(registry=registry, timeline=timeline)


@pytest.fixture
def make_track():
    """Factory for a feature track payload."""

    def _make(calculator_id, version=1, **fields):
        track = {
            "calculator_id": calculator_id,
            "version": version,
            "frame_count": 128,
            "channels": 1,
            "hop_seconds": 0.01,
            "start_time_seconds": 0.0,
        }
        track.update(fields)
        return track

    return _make


@pytest.fixture
def make_cache():
    """Factory for an audio feature cache payload."""

    def _make(audio_source_id, feature_tracks, **fields):
        cache = {
            "audio_source_id": audio_source_id,
            "version": 3,
            "feature_tracks": feature_tracks,
            "analysis_params": {"window_size": 2048, "hop_size": 512, "calculator_versions": {}},
            "default_analysis_profile_id": "default",
        }
        cache.update(fields)
        return cache

    return _make


@pytest.fixture
def make_intent():
    """Factory for intents; descriptors default to one spectrogram request."""

    def _make(element_id, track_ref, descriptors=None, **kwargs):
        return build_analysis_intent(
            element_id,
            kwargs.pop("element_type", "spectrum"),
            track_ref,
            descriptors if descriptors is not None else [SPECTROGRAM],
            **kwargs,
        )

    return _make
