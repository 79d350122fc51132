"""
Audio diagnostics API routes.

Exposes the diagnostics store over HTTP: cache diffs, regeneration jobs and
history, the missing-features popup, intent publication, and the timeline
inputs (tracks, caches, cache status) the diffs are computed from. Store
events are forwarded to the ``diagnostics`` websocket channel.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from .analysis_intents import build_analysis_intent
from .app_config import app_config
from .calculator_registry import create_default_registry
from .descriptor_builder import create_feature_descriptor
from .diagnostics_store import DiagnosticsStore
from .feature_cache import CacheStatusState
from .jobs import RegenerationTrigger
from .shared.logger import get_logger
from .timeline_store import TimelineStore

logger = get_logger(__name__)

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])


# ============= Request models =============


class DescriptorRequest(BaseModel):
    feature_key: str
    calculator_id: str | None = None
    band_index: int | None = None
    analysis_profile_id: str | None = None
    requested_analysis_profile_id: str | None = None
    profile_overrides_hash: str | None = None
    profile_params: Dict[str, Any] | None = Field(
        default=None, description="Ad hoc profile parameters (window_size, hop_size, ...)"
    )


class IntentRequest(BaseModel):
    element_id: str
    element_type: str = "unknown"
    track_ref: str | None = None
    analysis_profile_id: str | None = None
    descriptors: List[DescriptorRequest] = Field(default_factory=list)
    profile_registry_delta: Dict[str, Dict[str, Any]] | None = None


class RegenerateRequest(BaseModel):
    track_ref: str
    analysis_profile_id: str | None = None
    descriptor_keys: List[str]
    trigger: RegenerationTrigger = RegenerationTrigger.MANUAL
    wait: bool = Field(default=False, description="Respond once the job has finished")


class RegenerateAllRequest(BaseModel):
    wait: bool = False


class DismissExtraneousRequest(BaseModel):
    track_ref: str
    analysis_profile_id: str | None = None
    descriptor_key: str


class PreferencesUpdate(BaseModel):
    show_only_issues: bool | None = None
    sort: str | None = None
    history_display_limit: int | None = Field(default=None, ge=0)
    auto_regenerate: bool | None = None


class TrackRequest(BaseModel):
    id: str
    type: str = "audio"
    audio_source_id: str | None = None
    name: str | None = None


class TracksRequest(BaseModel):
    tracks: List[TrackRequest]


class CacheStatusRequest(BaseModel):
    state: CacheStatusState
    message: str | None = None


# ============= Store wiring =============


def _forward_store_events(store: DiagnosticsStore) -> None:
    """Push diff and popup changes to diagnostics websocket subscribers.

    Notifications run through the scheduler so they are drained with the jobs.
    """
    # Import here to avoid circular imports
    from websocket import notify_diagnostics_updated, notify_missing_popup

    def on_event(event: str) -> None:
        if event == "diffs":
            prefs = app_config.get_diagnostics_preferences()
            snapshot = store.snapshot(history_limit=prefs.history_display_limit)
            store.scheduler.spawn(lambda: notify_diagnostics_updated(snapshot))
        elif event == "popup":
            popup = store.popup.to_dict()
            store.scheduler.spawn(
                lambda: notify_missing_popup(popup["visible"], popup["suppressed"], popup["missing"])
            )

    store.subscribe(on_event)


def create_diagnostics_store(timeline: Optional[TimelineStore] = None) -> DiagnosticsStore:
    """Build a store with the built-in calculators, wired to the websocket channel."""
    store = DiagnosticsStore(
        registry=create_default_registry(),
        timeline=timeline or TimelineStore(),
        auto_regenerate=app_config.get_diagnostics_preferences().auto_regenerate,
    )
    _forward_store_events(store)
    return store


_store: DiagnosticsStore | None = None


def get_diagnostics_store() -> DiagnosticsStore:
    global _store
    if _store is None:
        _store = create_diagnostics_store()
    return _store


def set_diagnostics_store(store: DiagnosticsStore | None) -> None:
    """Replace the module-level store (None rebuilds it on next use)."""
    global _store
    _store = store


# ============= Read API =============


@router.get("")
async def get_diagnostics():
    """Full diagnostics snapshot, filtered by the stored preferences."""
    prefs = app_config.get_diagnostics_preferences()
    return get_diagnostics_store().snapshot(
        show_only_issues=prefs.show_only_issues,
        history_limit=prefs.history_display_limit,
    )


@router.get("/diffs")
async def list_diffs(show_only_issues: bool = False):
    store = get_diagnostics_store()
    diffs = [diff.to_dict() for diff in store.diffs if diff.has_issues or not show_only_issues]
    return {"diffs": diffs, "total": len(diffs), "banner_visible": store.banner_visible}


@router.get("/jobs")
async def list_jobs(limit: int = 50):
    jobs = get_diagnostics_store().scheduler.list_jobs(limit=limit)
    return {"jobs": [job.to_dict() for job in jobs], "total": len(jobs)}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    job = get_diagnostics_store().scheduler.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return job.to_dict()


@router.get("/history")
async def get_history(limit: int | None = None):
    if limit is None:
        limit = app_config.get_diagnostics_preferences().history_display_limit
    entries = get_diagnostics_store().scheduler.history_summary(limit)
    return {"history": [entry.to_dict() for entry in entries], "total": len(get_diagnostics_store().history)}


@router.get("/pending")
async def get_pending():
    return {"pending": get_diagnostics_store().pending_descriptors}


@router.get("/popup")
async def get_popup():
    return get_diagnostics_store().popup.to_dict()


@router.get("/calculators")
async def list_calculators():
    calculators = get_diagnostics_store().registry.list()
    return {"calculators": [info.to_dict() for info in calculators], "total": len(calculators)}


# ============= Intents =============


@router.post("/intents")
async def publish_intent(body: IntentRequest):
    """Publish an element's intent; an intent without track or descriptors clears it."""
    store = get_diagnostics_store()
    profile_delta = dict(body.profile_registry_delta or {})
    descriptors = []
    try:
        for entry in body.descriptors:
            if entry.profile_params:
                built = create_feature_descriptor(
                    entry.feature_key,
                    calculator_id=entry.calculator_id,
                    band_index=entry.band_index,
                    profile=entry.requested_analysis_profile_id or entry.analysis_profile_id,
                    profile_params=entry.profile_params,
                    registry=store.registry,
                )
                descriptors.append(built.descriptor)
                if built.profile_definition:
                    profile_delta.setdefault(built.profile, built.profile_definition)
            else:
                descriptors.append(entry.model_dump(exclude={"profile_params"}))

        intent = build_analysis_intent(
            body.element_id,
            body.element_type,
            body.track_ref,
            descriptors,
            analysis_profile_id=body.analysis_profile_id,
            profile_registry_delta=profile_delta or None,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if intent is None:
        removed = store.remove_intent(body.element_id)
        return {"published": False, "removed": removed, "intent": None}

    published = store.publish_intent(intent)
    return {"published": published, "removed": False, "intent": intent.to_dict()}


@router.delete("/intents/{element_id}")
async def remove_intent(element_id: str):
    if not get_diagnostics_store().remove_intent(element_id):
        raise HTTPException(status_code=404, detail=f"No intent for element '{element_id}'")
    return {"removed": True}


# ============= Actions =============


@router.post("/regenerate")
async def regenerate_descriptors(body: RegenerateRequest):
    store = get_diagnostics_store()
    try:
        job = store.regenerate_descriptors(
            body.track_ref,
            body.analysis_profile_id,
            body.descriptor_keys,
            body.trigger,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if job is not None and body.wait:
        await store.wait_for_idle()
    return {"job": job.to_dict() if job else None}


@router.post("/regenerate-all")
async def regenerate_all(body: RegenerateAllRequest | None = None):
    store = get_diagnostics_store()
    jobs = store.regenerate_all()
    if jobs and body is not None and body.wait:
        await store.wait_for_idle()
    return {"jobs": [job.to_dict() for job in jobs], "total": len(jobs)}


@router.post("/extraneous/dismiss")
async def dismiss_extraneous(body: DismissExtraneousRequest):
    try:
        dismissed = get_diagnostics_store().dismiss_extraneous(
            body.track_ref, body.analysis_profile_id, body.descriptor_key
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"dismissed": dismissed}


@router.post("/extraneous/delete")
async def delete_extraneous():
    return {"removed": get_diagnostics_store().delete_extraneous_caches()}


@router.post("/popup/dismiss")
async def dismiss_missing_popup():
    store = get_diagnostics_store()
    return {"dismissed": store.dismiss_missing_popup(), "popup": store.popup.to_dict()}


@router.post("/recompute")
async def recompute_diffs():
    diffs = get_diagnostics_store().recompute_diffs()
    return {"diffs": [diff.to_dict() for diff in diffs], "total": len(diffs)}


@router.post("/reset")
async def reset_diagnostics():
    get_diagnostics_store().reset()
    return {"success": True}


# ============= Preferences =============


@router.get("/preferences")
async def get_preferences():
    return app_config.get_diagnostics_preferences().to_dict()


@router.put("/preferences")
async def update_preferences(body: PreferencesUpdate):
    preferences = app_config.update_diagnostics_preferences(body.model_dump(exclude_none=True))
    get_diagnostics_store().auto_regenerate = preferences.auto_regenerate
    return preferences.to_dict()


# ============= Timeline inputs =============


@router.put("/timeline/tracks")
async def set_tracks(body: TracksRequest):
    timeline = get_diagnostics_store().timeline
    timeline.set_tracks([track.model_dump() for track in body.tracks])
    return {"tracks": [track.to_dict() for track in timeline.tracks.values()]}


@router.put("/timeline/caches/{audio_source_id}")
async def set_cache(audio_source_id: str, body: Dict[str, Any]):
    """Store a feature cache payload for one audio source."""
    try:
        cache = get_diagnostics_store().timeline.set_audio_feature_cache(audio_source_id, body)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return cache.to_dict()


@router.delete("/timeline/caches/{audio_source_id}")
async def remove_cache(audio_source_id: str):
    if not get_diagnostics_store().timeline.remove_audio_feature_cache(audio_source_id):
        raise HTTPException(status_code=404, detail=f"No cache for '{audio_source_id}'")
    return {"removed": True}


@router.put("/timeline/caches/{audio_source_id}/status")
async def set_cache_status(audio_source_id: str, body: CacheStatusRequest):
    status = get_diagnostics_store().timeline.set_cache_status(audio_source_id, body.state, message=body.message)
    return status.to_dict()
