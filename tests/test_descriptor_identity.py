"""
Tests for descriptor identity, analysis profiles and descriptor construction.

Run tests:
    pytest tests/test_descriptor_identity.py -v
"""

import pytest

from api.analysis_profiles import (
    hash_profile_overrides,
    profile_parameters_differ,
    resolve_adhoc_profile,
    sanitize_profile_overrides,
)
from api.descriptor_builder import create_feature_descriptor
from api.descriptor_identity import (
    AudioFeatureDescriptor,
    build_descriptor_id,
    build_descriptor_key,
    build_descriptor_label,
    build_descriptor_match_key,
    build_feature_track_key,
    coerce_descriptor,
    is_adhoc_profile_id,
    make_group_key,
    parse_descriptor_key,
    parse_feature_track_key,
    resolve_descriptor_profile_key,
    sanitize_analysis_profile_id,
    split_group_key,
)


def descriptor_key_for(descriptor, fallback=None):
    profile = resolve_descriptor_profile_key(descriptor, fallback)
    return build_descriptor_key(build_descriptor_match_key(descriptor), profile, descriptor.profile_overrides_hash)


# ============================================================================
# Match keys and ids
# ============================================================================


class TestMatchKey:
    def test_feature_and_calculator(self):
        key = build_descriptor_match_key({"feature_key": "spectrogram", "calculator_id": "mvmnt.spectrogram"})
        assert key == "match:feature:spectrogram|calc:mvmnt.spectrogram"

    def test_case_and_whitespace_insensitive(self):
        a = build_descriptor_match_key({"feature_key": " Spectrogram ", "calculator_id": "MVMNT.Spectrogram"})
        b = build_descriptor_match_key({"feature_key": "spectrogram", "calculator_id": "mvmnt.spectrogram"})
        assert a == b

    def test_field_order_and_casing_of_keys_do_not_matter(self):
        a = build_descriptor_match_key({"bandIndex": 2, "calculatorId": "mvmnt.rms", "featureKey": "rms"})
        b = build_descriptor_match_key({"feature_key": "rms", "calculator_id": "mvmnt.rms", "band_index": 2})
        assert a == b == "match:feature:rms|calc:mvmnt.rms|band:2"

    def test_optional_parts_omitted(self):
        assert build_descriptor_match_key({"feature_key": "rms"}) == "match:feature:rms"

    def test_profile_independent(self):
        a = build_descriptor_match_key({"feature_key": "rms", "analysis_profile_id": "hq"})
        b = build_descriptor_match_key({"feature_key": "rms"})
        assert a == b


class TestDescriptorId:
    def test_default_profile_omitted(self):
        descriptor = AudioFeatureDescriptor("rms", "mvmnt.rms", analysis_profile_id="default")
        assert build_descriptor_id(descriptor) == "id:feature:rms|calc:mvmnt.rms"

    def test_named_profile_included(self):
        descriptor = AudioFeatureDescriptor("rms", "mvmnt.rms", requested_analysis_profile_id="hq")
        assert build_descriptor_id(descriptor) == "id:feature:rms|calc:mvmnt.rms|profile:hq"

    def test_adhoc_hash_included(self):
        descriptor = AudioFeatureDescriptor(
            "rms", "mvmnt.rms", analysis_profile_id="adhoc-abc", profile_overrides_hash="abc"
        )
        assert build_descriptor_id(descriptor) == "id:feature:rms|calc:mvmnt.rms|profile:adhoc-abc|hash:abc"

    def test_coerce_requires_feature(self):
        with pytest.raises(ValueError):
            coerce_descriptor({"calculator_id": "mvmnt.rms"})


# ============================================================================
# Profile ids
# ============================================================================


class TestSanitizeProfileId:
    @pytest.mark.parametrize("value", [None, "", "   ", 42, "a__b", "_lead", ".lead", "has space", "ü"])
    def test_invalid_maps_to_default(self, value):
        assert sanitize_analysis_profile_id(value) == "default"

    @pytest.mark.parametrize("value", ["hq", "hq-1.v2_x", "adhoc-0123abcd", "Default2"])
    def test_valid_kept(self, value):
        assert sanitize_analysis_profile_id(value) == value

    def test_trimmed(self):
        assert sanitize_analysis_profile_id("  hq ") == "hq"


class TestResolveProfileKey:
    def test_own_profile_wins(self):
        descriptor = AudioFeatureDescriptor("rms", analysis_profile_id="hq", requested_analysis_profile_id="lq")
        assert resolve_descriptor_profile_key(descriptor, "intent") == "hq"

    def test_adhoc_hash_before_requested(self):
        descriptor = AudioFeatureDescriptor("rms", requested_analysis_profile_id="lq", profile_overrides_hash="abc")
        assert resolve_descriptor_profile_key(descriptor, "intent") == "adhoc-abc"

    def test_requested_before_fallback(self):
        descriptor = AudioFeatureDescriptor("rms", requested_analysis_profile_id="lq")
        assert resolve_descriptor_profile_key(descriptor, "intent") == "lq"

    def test_fallback_then_default(self):
        descriptor = AudioFeatureDescriptor("rms")
        assert resolve_descriptor_profile_key(descriptor, "intent") == "intent"
        assert resolve_descriptor_profile_key(descriptor, None) == "default"


# ============================================================================
# Descriptor keys
# ============================================================================


class TestDescriptorKey:
    def test_profile_appended(self):
        assert build_descriptor_key("match:feature:rms", "hq") == "match:feature:rms|profile:hq"

    def test_hash_appended(self):
        assert build_descriptor_key("match:feature:rms", "adhoc-abc", "abc") == (
            "match:feature:rms|profile:adhoc-abc|hash:abc"
        )

    def test_invalid_profile_sanitized(self):
        assert build_descriptor_key("match:feature:rms", "a__b") == "match:feature:rms|profile:default"

    def test_same_identity_same_key(self):
        a = AudioFeatureDescriptor("Spectrogram", "mvmnt.spectrogram")
        b = coerce_descriptor({"calculatorId": "MVMNT.SPECTROGRAM", "featureKey": "spectrogram"})
        assert descriptor_key_for(a) == descriptor_key_for(b)

    def test_profile_difference_changes_key(self):
        a = AudioFeatureDescriptor("rms", "mvmnt.rms", requested_analysis_profile_id="hq")
        b = AudioFeatureDescriptor("rms", "mvmnt.rms")
        assert descriptor_key_for(a) != descriptor_key_for(b)

    def test_parse_recovers_parts(self):
        parsed = parse_descriptor_key("match:feature:rms|calc:mvmnt.rms|band:3|profile:adhoc-abc|hash:abc")
        assert parsed.feature_key == "rms"
        assert parsed.calculator_id == "mvmnt.rms"
        assert parsed.band_index == 3
        assert parsed.profile_key == "adhoc-abc"
        assert parsed.overrides_hash == "abc"

    def test_parse_minimal(self):
        parsed = parse_descriptor_key("match:feature:rms|profile:default")
        assert parsed.calculator_id is None
        assert parsed.band_index is None
        assert parsed.overrides_hash is None

    @pytest.mark.parametrize(
        "key",
        [
            "",
            "feature:rms|profile:default",
            "match:feature:rms",
            "match:calc:mvmnt.rms|profile:default",
            "match:feature:rms|profile:default|bogus:1",
            "match:feature:rms|band:x|profile:default",
            "match:feature:rms|profile:",
            "match:feature:rms|profile:a|profile:b",
        ],
    )
    def test_parse_rejects_malformed(self, key):
        with pytest.raises(ValueError):
            parse_descriptor_key(key)


# ============================================================================
# Group and feature track keys
# ============================================================================


class TestGroupKeys:
    def test_make_group_key(self):
        assert make_group_key("audioTrack", None) == "audioTrack__default"
        assert make_group_key("audioTrack", "hq") == "audioTrack__hq"

    def test_split_group_key(self):
        assert split_group_key("my_track__hq") == ("my_track", "hq")
        assert split_group_key("a__b__hq") == ("a__b", "hq")
        assert split_group_key("plain") == ("plain", "default")

    def test_feature_track_keys(self):
        assert build_feature_track_key("rms") == "rms:default"
        assert build_feature_track_key("rms", "hq") == "rms:hq"
        assert parse_feature_track_key("rms:hq") == ("rms", "hq")
        assert parse_feature_track_key("rms") == ("rms", None)

    def test_label(self):
        assert build_descriptor_label(AudioFeatureDescriptor("rms", band_index=2)) == "rms · band 2"
        assert build_descriptor_label(None) == "Unknown descriptor"


# ============================================================================
# Analysis profiles and ad hoc descriptors
# ============================================================================


class TestAnalysisProfiles:
    def test_sanitize_overrides_keeps_known_keys(self):
        result = sanitize_profile_overrides({"windowSize": 512, "bogus": 1, "hop_size": float("nan"), "window": " hann "})
        assert result == {"window_size": 512, "window": "hann"}

    def test_sanitize_overrides_empty(self):
        assert sanitize_profile_overrides({"bogus": 1}) is None
        assert sanitize_profile_overrides(None) is None

    def test_hash_ignores_key_order(self):
        assert hash_profile_overrides({"window_size": 512, "hop_size": 128}) == hash_profile_overrides(
            {"hop_size": 128, "window_size": 512}
        )

    def test_adhoc_profile(self):
        profile_id, overrides_hash, definition = resolve_adhoc_profile({"windowSize": 4096})
        assert is_adhoc_profile_id(profile_id)
        assert profile_id == f"adhoc-{overrides_hash}"
        assert definition["window_size"] == 4096
        assert definition["hop_size"] == 512

    def test_parameters_differ_only_on_shared_numeric_keys(self):
        assert profile_parameters_differ({"window_size": 512}, {"window_size": 4096})
        assert not profile_parameters_differ({"window_size": 512}, {"hop_size": 128})
        assert not profile_parameters_differ({"windowSize": 512.0}, {"window_size": 512})
        assert not profile_parameters_differ({"window": "hann"}, {"window": "hamming"})


class TestDescriptorBuilder:
    def test_default_calculator_from_registry(self, registry):
        result = create_feature_descriptor("spectrogram", registry=registry)
        assert result.descriptor.calculator_id == "mvmnt.spectrogram"
        assert result.profile == "default"
        assert result.profile_definition is None

    def test_requested_profile(self, registry):
        result = create_feature_descriptor("rms", profile="hq", registry=registry)
        assert result.descriptor.requested_analysis_profile_id == "hq"
        assert result.profile == "hq"

    def test_window_size_512_and_4096_yield_distinct_keys(self, registry):
        small = create_feature_descriptor("spectrogram", profile_params={"windowSize": 512}, registry=registry)
        large = create_feature_descriptor("spectrogram", profile_params={"windowSize": 4096}, registry=registry)
        assert small.profile != large.profile
        assert descriptor_key_for(small.descriptor) != descriptor_key_for(large.descriptor)

    def test_identical_params_share_key(self, registry):
        a = create_feature_descriptor("spectrogram", profile_params={"windowSize": 512, "hopSize": 128}, registry=registry)
        b = create_feature_descriptor("spectrogram", profile_params={"hop_size": 128, "window_size": 512}, registry=registry)
        assert descriptor_key_for(a.descriptor) == descriptor_key_for(b.descriptor)

    def test_adhoc_descriptor_carries_hash(self, registry):
        result = create_feature_descriptor("spectrogram", profile_params={"windowSize": 512}, registry=registry)
        descriptor = result.descriptor
        assert descriptor.analysis_profile_id == result.profile
        assert descriptor.analysis_profile_id == f"adhoc-{descriptor.profile_overrides_hash}"
        assert result.profile_definition["window_size"] == 512

    def test_requires_feature(self):
        with pytest.raises(ValueError):
            create_feature_descriptor("  ")
