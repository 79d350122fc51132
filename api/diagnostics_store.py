"""
Audio diagnostics store.

Aggregate that owns the intent registry, the current cache diffs, the
dismissed-extraneous set, the missing-features popup and the regeneration
scheduler. Diffs are recomputed synchronously after every intent change,
timeline change, job transition and dismissal.

Listeners registered with ``subscribe`` are called with one of:

- ``"diffs"``: the diffs were recomputed
- ``"popup"``: the missing-features popup changed state
- ``"jobs"``: a regeneration job changed status
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from .analysis_intents import AnalysisIntent, IntentRegistry
from .cache_diff import CacheDiff, compute_cache_diffs
from .calculator_registry import CalculatorRegistry
from .descriptor_identity import make_group_key, parse_descriptor_key, sanitize_analysis_profile_id
from .jobs import (
    HistoryAction,
    HistoryEntry,
    RegenerationJob,
    RegenerationScheduler,
    RegenerationTrigger,
)
from .missing_popup import MissingPopupState
from .shared.logger import get_logger
from .timeline_store import TimelineStore

logger = get_logger(__name__)

StoreListener = Callable[[str], None]


class DiagnosticsStore:
    """Cache diagnostics for the whole timeline."""

    def __init__(
        self,
        registry: CalculatorRegistry,
        timeline: TimelineStore,
        intents: Optional[IntentRegistry] = None,
        scheduler: Optional[RegenerationScheduler] = None,
        auto_regenerate: bool = False,
    ):
        self.registry = registry
        self.timeline = timeline
        self.intents = intents or IntentRegistry()
        self.scheduler = scheduler or RegenerationScheduler(timeline=timeline, registry=registry)
        if self.scheduler.timeline is None:
            self.scheduler.timeline = timeline
        self.auto_regenerate = auto_regenerate

        self.popup = MissingPopupState()
        self._diffs: List[CacheDiff] = []
        self._dismissed: Dict[str, Set[str]] = {}
        self._auto_attempted: Dict[str, Set[str]] = {}
        self._listeners: List[StoreListener] = []
        self._recomputing = False
        self._recompute_requested = False
        self._known_tracks: Set[str] = set(timeline.tracks)

        self.intents.subscribe(self._on_intents_changed)
        self.timeline.subscribe(self._on_timeline_changed)
        self.scheduler.register_callback(self._on_job_changed)

    # ------------------------------------------------------------ intents

    def publish_intent(self, intent: Optional[AnalysisIntent], element_id: Optional[str] = None) -> bool:
        """Publish (or, with ``intent=None``, clear) an element's intent."""
        if intent is None:
            return self.remove_intent(element_id) if element_id else False
        return self.intents.publish(intent)

    def remove_intent(self, element_id: str) -> bool:
        return self.intents.remove(element_id)

    def _on_intents_changed(self, event: str, element_id: Optional[str]) -> None:
        self.recompute_diffs()

    def _on_timeline_changed(self, kind: str) -> None:
        if kind == "tracks":
            current = set(self.timeline.tracks)
            removed = self._known_tracks - current
            self._known_tracks = current
            if removed:
                self.intents.remove_for_tracks(removed)
        self.recompute_diffs()

    def _on_job_changed(self, job: RegenerationJob) -> None:
        self._emit("jobs")
        self.recompute_diffs()

    # ---------------------------------------------------------- recompute

    def recompute_diffs(self) -> List[CacheDiff]:
        """Recompute every diff and the derived state.

        A call made while a recompute is running (from a listener, say) is
        folded into one follow-up pass.
        """
        if self._recomputing:
            self._recompute_requested = True
            return self._diffs

        self._recomputing = True
        try:
            while True:
                self._recompute_requested = False
                self._recompute_once()
                if not self._recompute_requested:
                    break
        finally:
            self._recomputing = False
        return self._diffs

    def _recompute_once(self) -> None:
        diffs = compute_cache_diffs(
            self.intents.intents(),
            self.registry,
            self.timeline.tracks,
            self.timeline.audio_feature_caches,
            self.timeline.audio_feature_cache_status,
            self.scheduler.pending,
            self._dismissed,
            now=datetime.now(),
        )

        if self._clear_requested_dismissals(diffs):
            diffs = compute_cache_diffs(
                self.intents.intents(),
                self.registry,
                self.timeline.tracks,
                self.timeline.audio_feature_caches,
                self.timeline.audio_feature_cache_status,
                self.scheduler.pending,
                self._dismissed,
                now=datetime.now(),
            )

        self._diffs = diffs
        logger.debug("Recomputed %d cache diffs", len(diffs))
        self._emit("diffs")

        missing = {key for diff in diffs for key in diff.missing}
        if self.popup.observe(missing):
            self._emit("popup")

        if self.auto_regenerate:
            self._auto_regenerate(diffs)

    def _auto_regenerate(self, diffs: List[CacheDiff]) -> None:
        # A key is auto-submitted once per stretch of being missing or regenerating.
        unresolved = {
            diff.group_key: set(diff.missing) | set(diff.regenerating)
            for diff in diffs
            if diff.missing or diff.regenerating
        }
        self._auto_attempted = {
            key: attempted & unresolved[key]
            for key, attempted in self._auto_attempted.items()
            if key in unresolved
        }
        for diff in diffs:
            attempted = self._auto_attempted.setdefault(diff.group_key, set())
            keys = [key for key in diff.missing if key not in attempted]
            if not keys:
                continue
            attempted.update(keys)
            self.scheduler.regenerate_descriptors(
                diff.audio_source_id,
                diff.analysis_profile_id,
                keys,
                RegenerationTrigger.AUTO,
            )

    def _clear_requested_dismissals(self, diffs: List[CacheDiff]) -> bool:
        changed = False
        for diff in diffs:
            dismissed = self._dismissed.get(diff.group_key)
            if not dismissed:
                continue
            requested = dismissed.intersection(diff.descriptors_requested)
            if requested:
                dismissed.difference_update(requested)
                if not dismissed:
                    del self._dismissed[diff.group_key]
                changed = True
        return changed

    # ------------------------------------------------------- regeneration

    def regenerate_descriptors(
        self,
        track_ref: str,
        profile_id: Optional[str],
        descriptor_keys: List[str],
        trigger: RegenerationTrigger = RegenerationTrigger.MANUAL,
    ) -> Optional[RegenerationJob]:
        """Regenerate keys of the source ``track_ref`` reads from.

        Raises:
            ValueError: If a descriptor key is malformed.
        """
        audio_source_id = self.timeline.resolve_audio_source_id(track_ref)
        return self.scheduler.regenerate_descriptors(audio_source_id, profile_id, descriptor_keys, trigger)

    def regenerate_all(self, trigger: RegenerationTrigger = RegenerationTrigger.MANUAL) -> List[RegenerationJob]:
        """Regenerate every missing and stale key of every diff."""
        targets = [
            (diff.audio_source_id, diff.analysis_profile_id, diff.missing + diff.stale)
            for diff in self._diffs
            if diff.missing or diff.stale
        ]
        jobs = []
        for audio_source_id, profile_id, keys in targets:
            job = self.scheduler.regenerate_descriptors(audio_source_id, profile_id, keys, trigger)
            if job is not None:
                jobs.append(job)
        return jobs

    async def wait_for_idle(self) -> None:
        await self.scheduler.wait_for_idle()

    # ---------------------------------------------------------- dismissal

    def dismiss_extraneous(self, track_ref: str, profile_id: Optional[str], descriptor_key: str) -> bool:
        """Hide an extraneous key. Returns False if it was already dismissed.

        Raises:
            ValueError: If ``descriptor_key`` is malformed.
        """
        parse_descriptor_key(descriptor_key)
        audio_source_id = self.timeline.resolve_audio_source_id(track_ref)
        profile = sanitize_analysis_profile_id(profile_id)
        dismissed = self._dismissed.setdefault(make_group_key(audio_source_id, profile), set())
        if descriptor_key in dismissed:
            return False

        dismissed.add(descriptor_key)
        self.scheduler.record_history(
            HistoryAction.DISMISSED,
            [descriptor_key],
            audio_source_id=audio_source_id,
            analysis_profile_id=profile,
        )
        self.recompute_diffs()
        return True

    def delete_extraneous_caches(self) -> int:
        """Delete every visible extraneous feature track. Returns how many were removed."""
        targets: Dict[str, Dict[str, List[str]]] = {}
        for diff in self._diffs:
            for key in diff.extraneous:
                detail = diff.descriptor_details.get(key)
                if detail is None or not detail.feature_track_key:
                    continue
                per_source = targets.setdefault(diff.audio_source_id, {})
                per_source.setdefault(detail.feature_track_key, []).append(key)

        removed = 0
        for audio_source_id, track_keys in targets.items():
            count = self.timeline.remove_audio_feature_tracks(audio_source_id, list(track_keys))
            removed += count
            descriptor_ids = sorted({key for keys in track_keys.values() for key in keys})
            self.scheduler.record_history(
                HistoryAction.DELETED_EXTRANEOUS,
                descriptor_ids,
                audio_source_id=audio_source_id,
                note=f"{count} feature tracks removed",
            )

        if targets:
            logger.info("Deleted %d extraneous feature tracks", removed)
            self.recompute_diffs()
        return removed

    def dismissed_extraneous(self) -> Dict[str, List[str]]:
        return {key: sorted(keys) for key, keys in self._dismissed.items() if keys}

    # -------------------------------------------------------------- popup

    def dismiss_missing_popup(self) -> bool:
        if not self.popup.dismiss():
            return False
        self._emit("popup")
        return True

    @property
    def missing_popup_visible(self) -> bool:
        return self.popup.visible

    @property
    def missing_popup_suppressed(self) -> bool:
        return self.popup.suppressed

    # -------------------------------------------------------------- reads

    @property
    def diffs(self) -> List[CacheDiff]:
        return list(self._diffs)

    def get_diff(self, audio_source_id: str, profile_id: Optional[str] = None) -> Optional[CacheDiff]:
        group_key = make_group_key(audio_source_id, profile_id)
        for diff in self._diffs:
            if diff.group_key == group_key:
                return diff
        return None

    @property
    def jobs(self) -> List[RegenerationJob]:
        return self.scheduler.jobs

    @property
    def history(self) -> List[HistoryEntry]:
        return self.scheduler.history

    @property
    def pending_descriptors(self) -> Dict[str, List[str]]:
        return {key: sorted(keys) for key, keys in self.scheduler.pending.items()}

    @property
    def banner_visible(self) -> bool:
        return any(diff.missing or diff.stale or diff.bad_request for diff in self._diffs)

    def snapshot(self, show_only_issues: bool = False, history_limit: Optional[int] = None) -> Dict[str, Any]:
        diffs = [diff for diff in self._diffs if diff.has_issues or not show_only_issues]
        return {
            "diffs": [diff.to_dict() for diff in diffs],
            "banner_visible": self.banner_visible,
            "missing_popup": self.popup.to_dict(),
            "pending_descriptors": self.pending_descriptors,
            "dismissed_extraneous": self.dismissed_extraneous(),
            "jobs": [job.to_dict() for job in self.scheduler.list_jobs()],
            "history": [entry.to_dict() for entry in self.scheduler.history_summary(history_limit)],
        }

    # ---------------------------------------------------------- listeners

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Error in diagnostics listener (%s): %s", event, e)

    # -------------------------------------------------------------- reset

    def reset(self) -> None:
        """Back to the initial state. The timeline is left untouched."""
        self.intents.clear()
        self.scheduler.reset()
        self._dismissed.clear()
        self._auto_attempted.clear()
        self.popup.reset()
        self.recompute_diffs()
