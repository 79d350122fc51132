"""
Cache diff computation.

``compute_cache_diffs`` folds the published intents and the audio feature
caches into one ``CacheDiff`` per (audio source, analysis profile) pair. It is
a pure function of its arguments: the registry, topology, caches, pending and
dismissed sets are all passed in, and ``now`` stamps the result.

Classification of a requested descriptor key, first rule wins:

1. a regeneration is pending for it -> ``regenerating``
2. its calculator is unknown or emits another feature -> ``bad_request``
3. no cached feature track matches it -> ``missing``
4. the matching track is outdated -> ``stale``
5. otherwise it is cached and clear.

Cached tracks that no requested descriptor matches are ``extraneous`` unless
they were dismissed or are being regenerated.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .analysis_intents import AnalysisIntent
from .analysis_profiles import profile_parameters_differ
from .calculator_registry import CalculatorInfo, CalculatorRegistry
from .descriptor_identity import (
    DEFAULT_ANALYSIS_PROFILE_ID,
    AudioFeatureDescriptor,
    ParsedDescriptorKey,
    adhoc_hash_from_profile_id,
    build_descriptor_key,
    build_descriptor_label,
    build_descriptor_match_key,
    make_group_key,
    parse_descriptor_key,
    resolve_descriptor_profile_key,
    split_group_key,
)
from .feature_cache import (
    AudioFeatureCache,
    AudioFeatureCacheStatus,
    CacheStatusState,
    ChannelLayout,
    FeatureTrack,
)
from .timeline_store import TrackInfo, resolve_audio_source_id


class DiffStatus(str, Enum):
    CLEAR = "clear"
    ISSUES = "issues"


@dataclass
class CacheDescriptorDetail:
    """Display metadata for one descriptor key of a diff."""

    descriptor: AudioFeatureDescriptor
    channel_count: Optional[int] = None
    channel_aliases: Optional[List[str]] = None
    channel_layout: Optional[ChannelLayout] = None
    analysis_profile_id: Optional[str] = None
    feature_track_key: Optional[str] = None

    @property
    def label(self) -> str:
        """Descriptor label with its analysis profile, e.g. ``rms · band 2 · profile hq``."""
        profile = self.analysis_profile_id or DEFAULT_ANALYSIS_PROFILE_ID
        return f"{build_descriptor_label(self.descriptor)} · profile {profile}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "descriptor": self.descriptor.to_dict(),
            "label": self.label,
            "channel_count": self.channel_count,
            "channel_aliases": self.channel_aliases,
            "channel_layout": self.channel_layout.to_dict() if self.channel_layout else None,
            "analysis_profile_id": self.analysis_profile_id,
            "feature_track_key": self.feature_track_key,
        }


@dataclass
class CacheDiff:
    """Requested vs cached descriptors for one audio source and profile."""

    audio_source_id: str
    analysis_profile_id: str
    track_refs: List[str] = field(default_factory=list)
    descriptors_requested: List[str] = field(default_factory=list)
    descriptors_cached: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)
    extraneous: List[str] = field(default_factory=list)
    bad_request: List[str] = field(default_factory=list)
    regenerating: List[str] = field(default_factory=list)
    descriptor_details: Dict[str, CacheDescriptorDetail] = field(default_factory=dict)
    owners: Dict[str, List[str]] = field(default_factory=dict)
    status: DiffStatus = DiffStatus.CLEAR
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def group_key(self) -> str:
        return make_group_key(self.audio_source_id, self.analysis_profile_id)

    @property
    def has_issues(self) -> bool:
        return self.status == DiffStatus.ISSUES

    def describe(self, descriptor_id: str) -> str:
        """Display label for one of this diff's descriptor keys."""
        detail = self.descriptor_details.get(descriptor_id)
        if detail is None:
            return build_descriptor_label(None)
        return detail.label

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audio_source_id": self.audio_source_id,
            "analysis_profile_id": self.analysis_profile_id,
            "group_key": self.group_key,
            "track_refs": self.track_refs,
            "descriptors_requested": self.descriptors_requested,
            "descriptors_cached": self.descriptors_cached,
            "missing": self.missing,
            "stale": self.stale,
            "extraneous": self.extraneous,
            "bad_request": self.bad_request,
            "regenerating": self.regenerating,
            "descriptor_details": {key: detail.to_dict() for key, detail in self.descriptor_details.items()},
            "owners": self.owners,
            "status": self.status.value,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class _Request:
    descriptor: AudioFeatureDescriptor
    owners: Set[str] = field(default_factory=set)
    profile_definitions: List[Mapping[str, Any]] = field(default_factory=list)


@dataclass
class _CachedEntry:
    key: str
    track: FeatureTrack
    cache: AudioFeatureCache
    descriptor: AudioFeatureDescriptor
    overrides_hash: Optional[str]


@dataclass
class _Group:
    audio_source_id: str
    profile: str
    track_refs: Set[str] = field(default_factory=set)
    requests: Dict[str, _Request] = field(default_factory=dict)
    cached: List[_CachedEntry] = field(default_factory=list)
    pending: Set[str] = field(default_factory=set)


def _fold(value: Optional[str]) -> Optional[str]:
    return value.strip().casefold() if value else None


def _effective_calculator(descriptor: AudioFeatureDescriptor, registry: CalculatorRegistry) -> Optional[CalculatorInfo]:
    if descriptor.calculator_id:
        return registry.lookup(descriptor.calculator_id)
    return registry.find_by_feature(descriptor.feature_key)


def _requested_hash(descriptor: AudioFeatureDescriptor, profile: str) -> Optional[str]:
    return descriptor.profile_overrides_hash or adhoc_hash_from_profile_id(profile)


def _matches(
    descriptor: AudioFeatureDescriptor,
    profile: str,
    entry: _CachedEntry,
    registry: CalculatorRegistry,
) -> bool:
    if _fold(descriptor.feature_key) != _fold(entry.track.feature_key):
        return False
    calculator_id = descriptor.calculator_id
    if not calculator_id:
        default = registry.find_by_feature(descriptor.feature_key)
        calculator_id = default.id if default else None
    if calculator_id and _fold(calculator_id) != _fold(entry.track.calculator_id):
        return False
    return _requested_hash(descriptor, profile) == entry.overrides_hash


def _descriptor_from_track(track: FeatureTrack, profile: str) -> AudioFeatureDescriptor:
    return AudioFeatureDescriptor(
        feature_key=track.feature_key,
        calculator_id=track.calculator_id,
        analysis_profile_id=None if profile == DEFAULT_ANALYSIS_PROFILE_ID else profile,
        profile_overrides_hash=adhoc_hash_from_profile_id(profile),
    )


def _descriptor_from_key(parsed: ParsedDescriptorKey) -> AudioFeatureDescriptor:
    profile = parsed.profile_key
    return AudioFeatureDescriptor(
        feature_key=parsed.feature_key,
        calculator_id=parsed.calculator_id,
        band_index=parsed.band_index,
        analysis_profile_id=None if profile == DEFAULT_ANALYSIS_PROFILE_ID else profile,
        profile_overrides_hash=parsed.overrides_hash,
    )


def _is_stale(
    entry: _CachedEntry,
    calculator: CalculatorInfo,
    request: _Request,
    profile: str,
    status: Optional[AudioFeatureCacheStatus],
) -> bool:
    if status is not None and status.state == CacheStatusState.STALE:
        return True
    if entry.track.version is not None and entry.track.version != calculator.version:
        return True
    recorded_version = entry.cache.analysis_params.calculator_versions.get(calculator.id)
    if recorded_version is not None and recorded_version != calculator.version:
        return True
    recorded_profile = entry.cache.analysis_profiles.get(profile) or entry.track.analysis_params
    if recorded_profile:
        for definition in request.profile_definitions:
            if profile_parameters_differ(definition, recorded_profile):
                return True
    return False


def _detail(
    descriptor: AudioFeatureDescriptor,
    profile: str,
    entry: Optional[_CachedEntry],
) -> CacheDescriptorDetail:
    if entry is None:
        return CacheDescriptorDetail(descriptor=descriptor, analysis_profile_id=profile)
    track = entry.track
    layout = track.channel_layout
    aliases = track.channel_aliases or (layout.aliases if layout else None) or entry.cache.channel_aliases
    return CacheDescriptorDetail(
        descriptor=descriptor,
        channel_count=track.channels,
        channel_aliases=list(aliases) if aliases else None,
        channel_layout=layout,
        analysis_profile_id=profile,
        feature_track_key=track.key,
    )


def _get_group(groups: Dict[str, _Group], audio_source_id: str, profile: str) -> _Group:
    key = make_group_key(audio_source_id, profile)
    group = groups.get(key)
    if group is None:
        group = groups[key] = _Group(audio_source_id=audio_source_id, profile=profile)
    return group


def compute_cache_diffs(
    intents: Iterable[AnalysisIntent],
    registry: CalculatorRegistry,
    tracks: Mapping[str, TrackInfo],
    caches: Mapping[str, AudioFeatureCache],
    cache_status: Optional[Mapping[str, AudioFeatureCacheStatus]] = None,
    pending: Optional[Mapping[str, Iterable[str]]] = None,
    dismissed: Optional[Mapping[str, Iterable[str]]] = None,
    now: Optional[datetime] = None,
) -> List[CacheDiff]:
    """Compute one diff per (audio source, profile) pair.

    Args:
        intents: Current intents of every element.
        registry: Known calculators.
        tracks: Track topology by track id.
        caches: Audio feature cache per audio source id.
        cache_status: Cache status per audio source id.
        pending: Group key -> descriptor keys being regenerated.
        dismissed: Group key -> extraneous keys hidden by the user.
        now: Timestamp for ``updated_at``.

    Returns:
        Diffs with issues first, then ordered by audio source and profile.
    """
    cache_status = cache_status or {}
    pending = pending or {}
    dismissed = dismissed or {}
    now = now or datetime.now()

    groups: Dict[str, _Group] = {}

    for intent in intents:
        audio_source_id = resolve_audio_source_id(intent.track_ref, tracks)
        for entry in intent.descriptors:
            descriptor = entry.descriptor
            profile = resolve_descriptor_profile_key(descriptor, intent.analysis_profile_id)
            key = build_descriptor_key(entry.match_key, profile, _requested_hash(descriptor, profile))
            group = _get_group(groups, audio_source_id, profile)
            group.track_refs.add(intent.track_ref)
            request = group.requests.get(key)
            if request is None:
                request = group.requests[key] = _Request(descriptor=descriptor)
            request.owners.add(intent.element_id)
            definition = (intent.profile_registry_delta or {}).get(profile)
            if definition:
                request.profile_definitions.append(definition)

    for audio_source_id, cache in caches.items():
        for track in cache.feature_tracks.values():
            profile = cache.resolve_track_profile(track)
            descriptor = _descriptor_from_track(track, profile)
            overrides_hash = adhoc_hash_from_profile_id(profile)
            key = build_descriptor_key(build_descriptor_match_key(descriptor), profile, overrides_hash)
            group = _get_group(groups, audio_source_id, profile)
            group.cached.append(_CachedEntry(key, track, cache, descriptor, overrides_hash))

    for group_key, keys in pending.items():
        keys = set(keys)
        if not keys:
            continue
        audio_source_id, profile = split_group_key(group_key)
        _get_group(groups, audio_source_id, profile).pending.update(keys)

    diffs = [
        _diff_group(group, registry, tracks, cache_status, set(dismissed.get(key, ())), now)
        for key, group in groups.items()
        if group.requests or group.cached or group.pending
    ]
    diffs.sort(key=lambda d: (d.status != DiffStatus.ISSUES, d.audio_source_id, d.analysis_profile_id))
    return diffs


def _diff_group(
    group: _Group,
    registry: CalculatorRegistry,
    tracks: Mapping[str, TrackInfo],
    cache_status: Mapping[str, AudioFeatureCacheStatus],
    dismissed: Set[str],
    now: datetime,
) -> CacheDiff:
    profile = group.profile
    status = cache_status.get(group.audio_source_id)

    # Sorted so the first matching track per request is deterministic.
    cached = sorted(group.cached, key=lambda e: e.track.key)
    matched_entries: Dict[str, Optional[_CachedEntry]] = {}
    matched_tracks: Set[str] = set()
    for key, request in group.requests.items():
        hits = [entry for entry in cached if _matches(request.descriptor, profile, entry, registry)]
        matched_entries[key] = hits[0] if hits else None
        matched_tracks.update(entry.track.key for entry in hits)

    missing: Set[str] = set()
    stale: Set[str] = set()
    bad_request: Set[str] = set()
    regenerating: Set[str] = set()
    cached_keys: Set[str] = set()
    details: Dict[str, CacheDescriptorDetail] = {}
    owners: Dict[str, List[str]] = {}

    for key, request in group.requests.items():
        entry = matched_entries[key]
        if entry is not None:
            cached_keys.add(key)
        details[key] = _detail(request.descriptor, profile, entry)
        owners[key] = sorted(request.owners)

        if key in group.pending:
            regenerating.add(key)
            continue
        calculator = _effective_calculator(request.descriptor, registry)
        if calculator is None or _fold(calculator.feature_key) != _fold(request.descriptor.feature_key):
            bad_request.add(key)
        elif entry is None:
            missing.add(key)
        elif _is_stale(entry, calculator, request, profile, status):
            stale.add(key)

    unmatched: Set[str] = set()
    for entry in cached:
        if entry.track.key in matched_tracks:
            continue
        cached_keys.add(entry.key)
        unmatched.add(entry.key)
        if entry.key not in details:
            details[entry.key] = _detail(entry.descriptor, profile, entry)
            owners[entry.key] = []

    for key in group.pending - set(group.requests):
        regenerating.add(key)
        if key not in details:
            try:
                descriptor = _descriptor_from_key(parse_descriptor_key(key))
            except ValueError:
                continue
            details[key] = _detail(descriptor, profile, None)
            owners[key] = []

    extraneous = unmatched - set(group.requests) - dismissed - group.pending

    track_refs = set(group.track_refs)
    track_refs.update(
        track_id
        for track_id in tracks
        if resolve_audio_source_id(track_id, tracks) == group.audio_source_id
    )

    has_issues = bool(missing or stale or extraneous or bad_request)
    return CacheDiff(
        audio_source_id=group.audio_source_id,
        analysis_profile_id=profile,
        track_refs=sorted(track_refs),
        descriptors_requested=sorted(group.requests),
        descriptors_cached=sorted(cached_keys),
        missing=sorted(missing),
        stale=sorted(stale),
        extraneous=sorted(extraneous),
        bad_request=sorted(bad_request),
        regenerating=sorted(regenerating),
        descriptor_details=details,
        owners=owners,
        status=DiffStatus.ISSUES if has_issues else DiffStatus.CLEAR,
        updated_at=now,
    )
