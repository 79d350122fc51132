"""
In-process timeline store.

Holds the track topology, the audio feature cache per audio source and the
cache status map, and is the only component allowed to write feature data.
The diagnostics engine consumes it through a narrow surface: read the maps,
ask for reanalysis, remove feature tracks and subscribe to changes.

Actual signal analysis is delegated to an optional ``analyzer`` callable:

    def analyzer(audio_source_id, calculator_ids, profile_id) -> bool

``calculator_ids`` is None for a full restart. The callable may be a
coroutine function. Without an analyzer, reanalysis only marks the cache
status as pending.
"""

import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .feature_cache import AudioFeatureCache, AudioFeatureCacheStatus, CacheStatusState
from .shared.logger import get_logger

logger = get_logger(__name__)

Analyzer = Callable[[str, Optional[List[str]], Optional[str]], Union[bool, None, Awaitable[Optional[bool]]]]
TimelineListener = Callable[[str], None]


@dataclass(frozen=True)
class TrackInfo:
    id: str
    type: str = "audio"
    audio_source_id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrackInfo":
        track_id = str(data.get("id") or "").strip()
        if not track_id:
            raise ValueError("Track requires an id")
        return cls(
            id=track_id,
            type=str(data.get("type") or "audio"),
            audio_source_id=data.get("audio_source_id") or data.get("audioSourceId"),
            name=data.get("name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "audio_source_id": self.audio_source_id, "name": self.name}


def resolve_audio_source_id(track_ref: str, tracks: Mapping[str, TrackInfo]) -> str:
    """Audio source a track reads from.

    Audio tracks may alias another source; anything else (or an unknown
    track) is its own source.
    """
    track = tracks.get(track_ref)
    if track is not None and track.type == "audio":
        return track.audio_source_id or track.id
    return track_ref


class TimelineStore:
    """Track topology and audio feature caches."""

    def __init__(self, analyzer: Optional[Analyzer] = None):
        self.analyzer = analyzer
        self._tracks: Dict[str, TrackInfo] = {}
        self._caches: Dict[str, AudioFeatureCache] = {}
        self._status: Dict[str, AudioFeatureCacheStatus] = {}
        self._listeners: List[TimelineListener] = []

    # ----------------------------------------------------------------- reads

    @property
    def tracks(self) -> Dict[str, TrackInfo]:
        return dict(self._tracks)

    @property
    def audio_feature_caches(self) -> Dict[str, AudioFeatureCache]:
        return dict(self._caches)

    @property
    def audio_feature_cache_status(self) -> Dict[str, AudioFeatureCacheStatus]:
        return dict(self._status)

    def get_cache(self, audio_source_id: str) -> Optional[AudioFeatureCache]:
        return self._caches.get(audio_source_id)

    def resolve_audio_source_id(self, track_ref: str) -> str:
        return resolve_audio_source_id(track_ref, self._tracks)

    # -------------------------------------------------------------- topology

    def set_tracks(self, tracks: Iterable[Union[TrackInfo, Mapping[str, Any]]]) -> None:
        parsed = [track if isinstance(track, TrackInfo) else TrackInfo.from_dict(track) for track in tracks]
        self._tracks = {track.id: track for track in parsed}
        self._emit("tracks")

    def add_track(self, track: Union[TrackInfo, Mapping[str, Any]]) -> TrackInfo:
        info = track if isinstance(track, TrackInfo) else TrackInfo.from_dict(track)
        self._tracks[info.id] = info
        self._emit("tracks")
        return info

    def remove_track(self, track_id: str) -> bool:
        if self._tracks.pop(track_id, None) is None:
            return False
        self._emit("tracks")
        return True

    # ---------------------------------------------------------------- caches

    def set_audio_feature_cache(
        self,
        audio_source_id: str,
        cache: Union[AudioFeatureCache, Mapping[str, Any]],
    ) -> AudioFeatureCache:
        record = (
            cache
            if isinstance(cache, AudioFeatureCache)
            else AudioFeatureCache.from_dict(cache, audio_source_id=audio_source_id)
        )
        if record.updated_at is None:
            record.updated_at = datetime.now()
        self._caches[audio_source_id] = record
        self._emit("caches")
        return record

    def remove_audio_feature_cache(self, audio_source_id: str) -> bool:
        if self._caches.pop(audio_source_id, None) is None:
            return False
        self._status.pop(audio_source_id, None)
        self._emit("caches")
        return True

    def set_cache_status(
        self,
        audio_source_id: str,
        status: Union[AudioFeatureCacheStatus, CacheStatusState, str, Mapping[str, Any]],
        message: Optional[str] = None,
    ) -> AudioFeatureCacheStatus:
        record = AudioFeatureCacheStatus.from_dict(status)
        if message is not None:
            record.message = message
        if record.updated_at is None:
            record.updated_at = datetime.now()
        self._status[audio_source_id] = record
        self._emit("caches")
        return record

    def remove_audio_feature_tracks(self, audio_source_id: str, track_keys: Iterable[str]) -> int:
        """Delete feature tracks from a cache. Returns how many were removed."""
        cache = self._caches.get(audio_source_id)
        if cache is None:
            return 0
        removed = 0
        for key in set(track_keys):
            if cache.feature_tracks.pop(key, None) is not None:
                removed += 1
        if removed:
            cache.updated_at = datetime.now()
            logger.info("Removed %d feature tracks from cache %s", removed, audio_source_id)
            self._emit("caches")
        return removed

    # -------------------------------------------------------------- analysis

    async def reanalyze_audio_feature_calculators(
        self,
        audio_source_id: str,
        calculator_ids: List[str],
        profile_id: Optional[str] = None,
    ) -> bool:
        """Recompute the given calculators for one source and profile."""
        return await self._run_analysis(audio_source_id, list(calculator_ids), profile_id)

    async def restart_audio_feature_analysis(self, audio_source_id: str) -> bool:
        """Recompute every feature of a source."""
        return await self._run_analysis(audio_source_id, None, None)

    async def _run_analysis(
        self,
        audio_source_id: str,
        calculator_ids: Optional[List[str]],
        profile_id: Optional[str],
    ) -> bool:
        self.set_cache_status(audio_source_id, CacheStatusState.PENDING)
        if self.analyzer is None:
            logger.debug("No analyzer configured, %s left pending", audio_source_id)
            return True

        try:
            result = self.analyzer(audio_source_id, calculator_ids, profile_id)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self.set_cache_status(audio_source_id, CacheStatusState.FAILED, message=str(e))
            raise

        succeeded = result is None or bool(result)
        self.set_cache_status(
            audio_source_id,
            CacheStatusState.READY if succeeded else CacheStatusState.FAILED,
        )
        return succeeded

    # ------------------------------------------------------------- listeners

    def subscribe(self, listener: TimelineListener) -> Callable[[], None]:
        """Listen for ``"tracks"`` and ``"caches"`` changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind)
            except Exception as e:
                logger.error("Error in timeline listener: %s", e)

    def reset(self) -> None:
        self._tracks.clear()
        self._caches.clear()
        self._status.clear()
        self._emit("tracks")
