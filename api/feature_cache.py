"""
Audio feature cache records.

The engine only reads caches; the timeline collaborator produces them. Every
record is a tagged dataclass built through ``from_dict`` so that malformed
payloads are dealt with once, here, instead of in the diff algorithm:

- a feature track without a calculator id or a resolvable feature key is
  skipped,
- malformed optional fields (channel counts, aliases, layouts) become None.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .descriptor_identity import (
    DEFAULT_ANALYSIS_PROFILE_ID,
    clean_optional_string,
    parse_feature_track_key,
    sanitize_analysis_profile_id,
)
from .shared.logger import get_logger

logger = get_logger(__name__)

CACHE_RECORD_VERSION = 3


def _get(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return None


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None


def _optional_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


def _string_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, (list, tuple)):
        return None
    result = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return result or None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        # Epoch milliseconds
        return datetime.fromtimestamp(value / 1000)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class ChannelLayout:
    aliases: Optional[List[str]] = None
    semantics: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ChannelLayout"]:
        if not isinstance(data, Mapping):
            return None
        aliases = _string_list(data.get("aliases"))
        semantics = clean_optional_string(data.get("semantics"))
        if aliases is None and semantics is None:
            return None
        return cls(aliases=aliases, semantics=semantics)

    def to_dict(self) -> Dict[str, Any]:
        return {"aliases": self.aliases, "semantics": self.semantics}


@dataclass
class FeatureTrack:
    """One computed feature stored in a cache."""

    key: str
    feature_key: str
    calculator_id: str
    version: Optional[int] = None
    frame_count: Optional[int] = None
    channels: Optional[int] = None
    hop_seconds: Optional[float] = None
    start_time_seconds: Optional[float] = None
    channel_layout: Optional[ChannelLayout] = None
    channel_aliases: Optional[List[str]] = None
    analysis_profile_id: Optional[str] = None
    analysis_params: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, entry_key: str, data: Any) -> Optional["FeatureTrack"]:
        """Validate one cache entry. Returns None for malformed entries."""
        if not isinstance(data, Mapping):
            return None

        calculator_id = clean_optional_string(_get(data, "calculator_id", "calculatorId"))
        key = clean_optional_string(_get(data, "key")) or clean_optional_string(entry_key)
        if not calculator_id or not key:
            return None

        feature_key, key_profile = parse_feature_track_key(key)
        feature_key = clean_optional_string(_get(data, "feature_key", "featureKey")) or feature_key
        if not feature_key:
            return None

        profile_id = clean_optional_string(_get(data, "analysis_profile_id", "analysisProfileId")) or key_profile
        params = _get(data, "analysis_params", "analysisParams")

        return cls(
            key=key,
            feature_key=feature_key,
            calculator_id=calculator_id,
            version=_optional_int(data.get("version")),
            frame_count=_optional_int(_get(data, "frame_count", "frameCount")),
            channels=_optional_int(_get(data, "channels", "channelCount")),
            hop_seconds=_optional_float(_get(data, "hop_seconds", "hopSeconds")),
            start_time_seconds=_optional_float(_get(data, "start_time_seconds", "startTimeSeconds")),
            channel_layout=ChannelLayout.from_dict(_get(data, "channel_layout", "channelLayout")),
            channel_aliases=_string_list(_get(data, "channel_aliases", "channelAliases")),
            analysis_profile_id=profile_id,
            analysis_params=dict(params) if isinstance(params, Mapping) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "feature_key": self.feature_key,
            "calculator_id": self.calculator_id,
            "version": self.version,
            "frame_count": self.frame_count,
            "channels": self.channels,
            "hop_seconds": self.hop_seconds,
            "start_time_seconds": self.start_time_seconds,
            "channel_layout": self.channel_layout.to_dict() if self.channel_layout else None,
            "channel_aliases": self.channel_aliases,
            "analysis_profile_id": self.analysis_profile_id,
            "analysis_params": self.analysis_params,
        }


@dataclass
class AnalysisParams:
    params: Dict[str, Any] = field(default_factory=dict)
    calculator_versions: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "AnalysisParams":
        if not isinstance(data, Mapping):
            return cls()
        raw_versions = _get(data, "calculator_versions", "calculatorVersions")
        versions: Dict[str, int] = {}
        if isinstance(raw_versions, Mapping):
            for calculator_id, version in raw_versions.items():
                parsed = _optional_int(version)
                if isinstance(calculator_id, str) and parsed is not None:
                    versions[calculator_id] = parsed
        params = {
            key: value
            for key, value in data.items()
            if key not in ("calculator_versions", "calculatorVersions")
        }
        return cls(params=params, calculator_versions=versions)

    def to_dict(self) -> Dict[str, Any]:
        return {**self.params, "calculator_versions": dict(self.calculator_versions)}


@dataclass
class AudioFeatureCache:
    """All feature tracks computed for one audio source."""

    audio_source_id: str
    version: int = CACHE_RECORD_VERSION
    feature_tracks: Dict[str, FeatureTrack] = field(default_factory=dict)
    analysis_params: AnalysisParams = field(default_factory=AnalysisParams)
    analysis_profiles: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    default_analysis_profile_id: Optional[str] = None
    channel_aliases: Optional[List[str]] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], audio_source_id: Optional[str] = None) -> "AudioFeatureCache":
        """Build a cache record, dropping malformed feature tracks.

        Raises:
            ValueError: If no audio source id is available.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"Cache payload must be a mapping, got {type(data).__name__}")

        source_id = clean_optional_string(_get(data, "audio_source_id", "audioSourceId")) or clean_optional_string(
            audio_source_id
        )
        if not source_id:
            raise ValueError("Cache payload has no audio source id")

        tracks: Dict[str, FeatureTrack] = {}
        raw_tracks = _get(data, "feature_tracks", "featureTracks")
        if isinstance(raw_tracks, Mapping):
            for entry_key, entry in raw_tracks.items():
                track = FeatureTrack.from_dict(entry_key, entry)
                if track is None:
                    logger.warning("Skipping malformed feature track %r in cache %s", entry_key, source_id)
                    continue
                tracks[track.key] = track

        profiles: Dict[str, Dict[str, Any]] = {}
        raw_profiles = _get(data, "analysis_profiles", "analysisProfiles")
        if isinstance(raw_profiles, Mapping):
            for profile_id, definition in raw_profiles.items():
                if isinstance(definition, Mapping):
                    profiles[sanitize_analysis_profile_id(profile_id)] = dict(definition)
        elif isinstance(raw_profiles, (list, tuple)):
            for definition in raw_profiles:
                if isinstance(definition, Mapping) and definition.get("id"):
                    profiles[sanitize_analysis_profile_id(definition["id"])] = dict(definition)

        version = _optional_int(data.get("version"))
        default_profile = clean_optional_string(_get(data, "default_analysis_profile_id", "defaultAnalysisProfileId"))

        return cls(
            audio_source_id=source_id,
            version=version if version is not None else CACHE_RECORD_VERSION,
            feature_tracks=tracks,
            analysis_params=AnalysisParams.from_dict(_get(data, "analysis_params", "analysisParams")),
            analysis_profiles=profiles,
            default_analysis_profile_id=default_profile,
            channel_aliases=_string_list(_get(data, "channel_aliases", "channelAliases")),
            updated_at=_parse_datetime(_get(data, "updated_at", "updatedAt")),
        )

    def resolve_track_profile(self, track: FeatureTrack) -> str:
        """Profile a feature track was computed under."""
        return sanitize_analysis_profile_id(
            track.analysis_profile_id or self.default_analysis_profile_id or DEFAULT_ANALYSIS_PROFILE_ID
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audio_source_id": self.audio_source_id,
            "version": self.version,
            "feature_tracks": {key: track.to_dict() for key, track in self.feature_tracks.items()},
            "analysis_params": self.analysis_params.to_dict(),
            "analysis_profiles": self.analysis_profiles,
            "default_analysis_profile_id": self.default_analysis_profile_id,
            "channel_aliases": self.channel_aliases,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CacheStatusState(str, Enum):
    """Lifecycle of a cache as reported by the timeline."""

    IDLE = "idle"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    STALE = "stale"


@dataclass
class AudioFeatureCacheStatus:
    state: CacheStatusState = CacheStatusState.IDLE
    message: Optional[str] = None
    updated_at: Optional[datetime] = None
    source_hash: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "AudioFeatureCacheStatus":
        if isinstance(data, AudioFeatureCacheStatus):
            return data
        if isinstance(data, (str, CacheStatusState)):
            data = {"state": data}
        if not isinstance(data, Mapping):
            return cls()
        try:
            state = CacheStatusState(data.get("state") or CacheStatusState.IDLE)
        except ValueError:
            state = CacheStatusState.IDLE
        return cls(
            state=state,
            message=clean_optional_string(data.get("message")),
            updated_at=_parse_datetime(_get(data, "updated_at", "updatedAt")),
            source_hash=clean_optional_string(_get(data, "source_hash", "sourceHash")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "message": self.message,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "source_hash": self.source_hash,
        }
