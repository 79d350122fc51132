"""
Tests for cache diff computation.

Run tests:
    pytest tests/test_cache_diff.py -v
"""

from datetime import datetime

import pytest

from api.analysis_intents import build_analysis_intent
from api.cache_diff import DiffStatus, compute_cache_diffs
from api.calculator_registry import create_default_registry
from api.descriptor_builder import create_feature_descriptor
from api.feature_cache import AudioFeatureCache, AudioFeatureCacheStatus, CacheStatusState
from api.timeline_store import TrackInfo

SPECTROGRAM = {"feature_key": "spectrogram", "calculator_id": "mvmnt.spectrogram"}
RMS = {"feature_key": "rms", "calculator_id": "mvmnt.rms"}
WAVEFORM = {"feature_key": "waveform", "calculator_id": "mvmnt.waveform"}
PITCH = {"feature_key": "pitchWaveform", "calculator_id": "mvmnt.pitchWaveform"}

SPEC_KEY = "match:feature:spectrogram|calc:mvmnt.spectrogram|profile:default"
RMS_KEY = "match:feature:rms|calc:mvmnt.rms|profile:default"
WAVE_KEY = "match:feature:waveform|calc:mvmnt.waveform|profile:default"
PITCH_KEY = "match:feature:pitchwaveform|calc:mvmnt.pitchwaveform|profile:default"
MFCC_KEY = "match:feature:mfcc|profile:default"
ENERGY_KEY = "match:feature:energy|calc:vendor.energy|profile:default"

NOW = datetime(2026, 1, 1, 12, 0, 0)


def track(calculator_id, version=1, **fields):
    data = {"calculator_id": calculator_id, "version": version, "frame_count": 64, "channels": 1}
    data.update(fields)
    return data


def cache(source, feature_tracks, **fields):
    payload = {"audio_source_id": source, "feature_tracks": feature_tracks}
    payload.update(fields)
    return AudioFeatureCache.from_dict(payload)


def compute(intents=(), caches=(), tracks=(), status=None, pending=None, dismissed=None, registry=None):
    return compute_cache_diffs(
        intents,
        registry or create_default_registry(),
        {info.id: info for info in tracks},
        {record.audio_source_id: record for record in caches},
        status or {},
        pending or {},
        dismissed or {},
        now=NOW,
    )


def only(diffs):
    assert len(diffs) == 1
    return diffs[0]


# ============================================================================
# Classification
# ============================================================================


class TestClassification:
    def test_nothing_in_nothing_out(self):
        assert compute() == []

    def test_missing(self):
        diff = only(compute([build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])]))
        assert diff.audio_source_id == "audioTrack"
        assert diff.analysis_profile_id == "default"
        assert diff.group_key == "audioTrack__default"
        assert diff.descriptors_requested == [SPEC_KEY]
        assert diff.missing == [SPEC_KEY]
        assert diff.descriptors_cached == []
        assert diff.owners == {SPEC_KEY: ["el-1"]}
        assert diff.track_refs == ["audioTrack"]
        assert diff.status == DiffStatus.ISSUES
        assert diff.updated_at == NOW

    def test_cached(self):
        diff = only(
            compute(
                [build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])],
                [cache("audioTrack", {"spectrogram:default": track("mvmnt.spectrogram", 3)})],
            )
        )
        assert diff.descriptors_cached == [SPEC_KEY]
        assert diff.missing == diff.stale == diff.extraneous == []
        assert diff.status == DiffStatus.CLEAR

    def test_bare_track_key_matches(self):
        diff = only(
            compute(
                [build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])],
                [cache("audioTrack", {"spectrogram": track("mvmnt.spectrogram", 3)})],
            )
        )
        assert diff.status == DiffStatus.CLEAR

    def test_descriptor_without_calculator_uses_default(self):
        diff = only(
            compute(
                [build_analysis_intent("el-1", "spectrum", "audioTrack", [{"feature_key": "spectrogram"}])],
                [cache("audioTrack", {"spectrogram:default": track("mvmnt.spectrogram", 3)})],
            )
        )
        assert diff.descriptors_requested == ["match:feature:spectrogram|profile:default"]
        assert diff.descriptors_cached == ["match:feature:spectrogram|profile:default"]
        assert diff.extraneous == []
        assert diff.status == DiffStatus.CLEAR

    def test_unknown_calculator_is_bad_request(self):
        diff = only(
            compute(
                [
                    build_analysis_intent(
                        "el-1", "spectrum", "audioTrack", [{"feature_key": "spectrogram", "calculator_id": "vendor.fft"}]
                    )
                ]
            )
        )
        assert diff.bad_request == ["match:feature:spectrogram|calc:vendor.fft|profile:default"]
        assert diff.missing == []
        assert diff.status == DiffStatus.ISSUES

    def test_calculator_for_another_feature_is_bad_request(self):
        diff = only(
            compute(
                [
                    build_analysis_intent(
                        "el-1", "meter", "audioTrack", [{"feature_key": "rms", "calculator_id": "mvmnt.spectrogram"}]
                    )
                ],
                [cache("audioTrack", {"rms:default": track("mvmnt.spectrogram", 3)})],
            )
        )
        key = "match:feature:rms|calc:mvmnt.spectrogram|profile:default"
        assert diff.bad_request == [key]
        assert diff.extraneous == []

    def test_feature_without_any_calculator_is_bad_request(self):
        diff = only(compute([build_analysis_intent("el-1", "spectrum", "audioTrack", [{"feature_key": "mfcc"}])]))
        assert diff.bad_request == [MFCC_KEY]


class TestStaleness:
    def test_track_version_mismatch(self):
        diff = only(
            compute(
                [build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])],
                [cache("audioTrack", {"spectrogram:default": track("mvmnt.spectrogram", 2)})],
            )
        )
        assert diff.stale == [SPEC_KEY]
        assert diff.descriptors_cached == [SPEC_KEY]
        assert diff.status == DiffStatus.ISSUES

    def test_recorded_calculator_version_mismatch(self):
        diff = only(
            compute(
                [build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])],
                [
                    cache(
                        "audioTrack",
                        {"spectrogram:default": track("mvmnt.spectrogram", version=None)},
                        analysis_params={"calculator_versions": {"mvmnt.spectrogram": 2}},
                    )
                ],
            )
        )
        assert diff.stale == [SPEC_KEY]

    def test_cache_status_stale(self):
        diff = only(
            compute(
                [build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])],
                [cache("audioTrack", {"spectrogram:default": track("mvmnt.spectrogram", 3)})],
                status={"audioTrack": AudioFeatureCacheStatus(state=CacheStatusState.STALE)},
            )
        )
        assert diff.stale == [SPEC_KEY]

    @pytest.mark.parametrize("recorded, expected_stale", [(2048, True), (4096, False)])
    def test_profile_parameters(self, recorded, expected_stale):
        intent = build_analysis_intent(
            "el-1",
            "spectrum",
            "audioTrack",
            [SPECTROGRAM],
            analysis_profile_id="hq",
            profile_registry_delta={"hq": {"window_size": 4096}},
        )
        diff = only(
            compute(
                [intent],
                [
                    cache(
                        "audioTrack",
                        {"spectrogram:hq": track("mvmnt.spectrogram", 3)},
                        analysis_profiles={"hq": {"window_size": recorded, "hop_size": 1024}},
                    )
                ],
            )
        )
        key = "match:feature:spectrogram|calc:mvmnt.spectrogram|profile:hq"
        assert diff.analysis_profile_id == "hq"
        assert (diff.stale == [key]) is expected_stale


# ============================================================================
# Extraneous, dismissed and pending
# ============================================================================


class TestExtraneousAndPending:
    def test_cache_only_source_is_extraneous(self):
        diff = only(compute(caches=[cache("src", {"rms:default": track("mvmnt.rms")})]))
        assert diff.descriptors_requested == []
        assert diff.descriptors_cached == [RMS_KEY]
        assert diff.extraneous == [RMS_KEY]
        assert diff.owners == {RMS_KEY: []}
        assert diff.descriptor_details[RMS_KEY].feature_track_key == "rms:default"
        assert diff.status == DiffStatus.ISSUES

    def test_dismissed_hidden(self):
        diff = only(
            compute(
                caches=[cache("src", {"rms:default": track("mvmnt.rms")})],
                dismissed={"src__default": {RMS_KEY}},
            )
        )
        assert diff.extraneous == []
        assert diff.descriptors_cached == [RMS_KEY]
        assert diff.status == DiffStatus.CLEAR

    def test_pending_is_regenerating_not_missing(self):
        diff = only(
            compute(
                [build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])],
                pending={"audioTrack__default": {SPEC_KEY}},
            )
        )
        assert diff.regenerating == [SPEC_KEY]
        assert diff.missing == []
        assert diff.status == DiffStatus.CLEAR

    def test_pending_without_intent_is_reported(self):
        diff = only(compute(pending={"audioTrack__default": {RMS_KEY}}))
        assert diff.regenerating == [RMS_KEY]
        assert diff.descriptor_details[RMS_KEY].descriptor.feature_key == "rms"
        assert diff.owners[RMS_KEY] == []

    def test_pending_extraneous_key_not_reported_extraneous(self):
        diff = only(
            compute(
                caches=[cache("src", {"rms:default": track("mvmnt.rms")})],
                pending={"src__default": {RMS_KEY}},
            )
        )
        assert diff.extraneous == []
        assert diff.regenerating == [RMS_KEY]

    def test_categories_are_disjoint(self):
        intent = build_analysis_intent(
            "el-1",
            "spectrum",
            "audioTrack",
            [SPECTROGRAM, RMS, WAVEFORM, PITCH, {"feature_key": "mfcc"}],
        )
        diff = only(
            compute(
                [intent],
                [
                    cache(
                        "audioTrack",
                        {
                            "spectrogram:default": track("mvmnt.spectrogram", 3),
                            "rms:default": track("mvmnt.rms", 2),
                            "energy:default": track("vendor.energy"),
                        },
                    )
                ],
                pending={"audioTrack__default": {PITCH_KEY}},
            )
        )
        assert diff.stale == [RMS_KEY]
        assert diff.missing == [WAVE_KEY]
        assert diff.bad_request == [MFCC_KEY]
        assert diff.regenerating == [PITCH_KEY]
        assert diff.extraneous == [ENERGY_KEY]
        assert diff.descriptors_cached == sorted([SPEC_KEY, RMS_KEY, ENERGY_KEY])

        categories = [diff.missing, diff.stale, diff.extraneous, diff.bad_request, diff.regenerating]
        for i, left in enumerate(categories):
            for right in categories[i + 1:]:
                assert not set(left) & set(right)


# ============================================================================
# Grouping, topology and details
# ============================================================================


class TestGrouping:
    def test_linked_tracks_share_source(self):
        tracks = [TrackInfo("sourceTrack"), TrackInfo("linkedTrack", audio_source_id="sourceTrack")]
        diff = only(compute([build_analysis_intent("el-1", "spectrum", "linkedTrack", [SPECTROGRAM])], tracks=tracks))
        assert diff.audio_source_id == "sourceTrack"
        assert diff.track_refs == ["linkedTrack", "sourceTrack"]

    def test_owners_merge_across_elements(self):
        diffs = compute(
            [
                build_analysis_intent("el-2", "spectrum", "audioTrack", [SPECTROGRAM]),
                build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM]),
            ]
        )
        assert only(diffs).owners[SPEC_KEY] == ["el-1", "el-2"]

    def test_profiles_are_separate_groups(self):
        diffs = compute(
            [
                build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM]),
                build_analysis_intent("el-2", "spectrum", "audioTrack", [SPECTROGRAM], analysis_profile_id="hq"),
            ],
            [cache("audioTrack", {"spectrogram:default": track("mvmnt.spectrogram", 3)})],
        )
        assert [(d.analysis_profile_id, d.status) for d in diffs] == [
            ("hq", DiffStatus.ISSUES),
            ("default", DiffStatus.CLEAR),
        ]

    def test_sorted_issues_then_source(self):
        diffs = compute(
            [
                build_analysis_intent("el-1", "spectrum", "a", [SPECTROGRAM]),
                build_analysis_intent("el-2", "spectrum", "c", [SPECTROGRAM]),
                build_analysis_intent("el-3", "spectrum", "b", [SPECTROGRAM]),
            ],
            [cache("a", {"spectrogram:default": track("mvmnt.spectrogram", 3)})],
        )
        assert [d.audio_source_id for d in diffs] == ["b", "c", "a"]

    def test_channel_metadata(self):
        diff = only(
            compute(
                [build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])],
                [
                    cache(
                        "audioTrack",
                        {
                            "spectrogram:default": track(
                                "mvmnt.spectrogram",
                                3,
                                channels=2,
                                channelLayout={"aliases": ["Left", "Right"], "semantics": "stereo"},
                            )
                        },
                    )
                ],
            )
        )
        detail = diff.descriptor_details[SPEC_KEY]
        assert detail.channel_count == 2
        assert detail.channel_aliases == ["Left", "Right"]
        assert detail.channel_layout.semantics == "stereo"
        assert detail.feature_track_key == "spectrogram:default"
        assert detail.analysis_profile_id == "default"

    def test_missing_detail_has_no_channels(self):
        diff = only(compute([build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM])]))
        detail = diff.descriptor_details[SPEC_KEY]
        assert detail.channel_count is None
        assert detail.feature_track_key is None

    def test_adhoc_profile_matches_its_own_cache_entry(self):
        registry = create_default_registry()
        built = create_feature_descriptor("spectrogram", profile_params={"windowSize": 512}, registry=registry)
        intent = build_analysis_intent("el-1", "spectrum", "audioTrack", [built.descriptor])
        diff = only(
            compute(
                [intent],
                [cache("audioTrack", {f"spectrogram:{built.profile}": track("mvmnt.spectrogram", 3)})],
                registry=registry,
            )
        )
        assert diff.analysis_profile_id == built.profile
        assert diff.descriptors_requested[0].endswith(f"|hash:{built.descriptor.profile_overrides_hash}")
        assert diff.status == DiffStatus.CLEAR

    def test_window_sizes_produce_distinct_keys(self):
        registry = create_default_registry()
        small = create_feature_descriptor("spectrogram", profile_params={"windowSize": 512}, registry=registry)
        large = create_feature_descriptor("spectrogram", profile_params={"windowSize": 4096}, registry=registry)
        diffs = compute(
            [
                build_analysis_intent("el-1", "spectrum", "audioTrack", [small.descriptor]),
                build_analysis_intent("el-2", "spectrum", "audioTrack", [large.descriptor]),
            ],
            registry=registry,
        )

        missing = {diff.analysis_profile_id: diff.missing for diff in diffs}
        assert sorted(missing) == sorted([small.profile, large.profile])
        assert len({key for keys in missing.values() for key in keys}) == 2
        assert missing[small.profile][0].endswith(f"|hash:{small.descriptor.profile_overrides_hash}")
        assert missing[large.profile][0].endswith(f"|hash:{large.descriptor.profile_overrides_hash}")

    def test_descriptor_labels_name_the_profile(self):
        diffs = compute(
            [
                build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM]),
                build_analysis_intent("el-2", "spectrum", "audioTrack", [RMS], analysis_profile_id="hq"),
            ]
        )
        by_profile = {diff.analysis_profile_id: diff for diff in diffs}
        hq_key = by_profile["hq"].missing[0]

        assert by_profile["default"].describe(SPEC_KEY) == "spectrogram · profile default"
        assert by_profile["hq"].describe(hq_key) == "rms · profile hq"
        assert by_profile["hq"].to_dict()["descriptor_details"][hq_key]["label"] == "rms · profile hq"
        assert by_profile["default"].describe("match:feature:nope|profile:default") == "Unknown descriptor"

    def test_deterministic(self):
        args = dict(
            intents=[build_analysis_intent("el-1", "spectrum", "audioTrack", [SPECTROGRAM, RMS])],
            caches=[cache("audioTrack", {"rms:default": track("mvmnt.rms", 2), "energy": track("vendor.energy")})],
        )
        first = [d.to_dict() for d in compute(**args)]
        second = [d.to_dict() for d in compute(**args)]
        assert first == second
