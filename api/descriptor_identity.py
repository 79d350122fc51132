"""
Descriptor identity for audio feature requests.

Pure, structural helpers that turn a feature request into canonical strings:

- ``match key``: feature + calculator + band, independent of the profile.
- ``descriptor id``: the whole descriptor including its profile fields.
- ``descriptor key``: the diff-level key, a match key with the *resolved*
  profile (and the ad hoc override hash when present) folded in.

None of these functions consult the calculator registry or any cache.
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping, NamedTuple, Optional

DEFAULT_ANALYSIS_PROFILE_ID = "default"
ADHOC_PROFILE_PREFIX = "adhoc-"

FEATURE_TRACK_KEY_SEPARATOR = ":"
GROUP_KEY_SEPARATOR = "__"

_MATCH_PREFIX = "match:"
_ID_PREFIX = "id:"

# Single underscores are allowed, a double underscore is the group key separator.
_VALID_PROFILE_ID = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.\-]|_(?!_))*$")

_FIELD_ALIASES = {
    "feature_key": ("feature_key", "featureKey", "feature"),
    "calculator_id": ("calculator_id", "calculatorId"),
    "band_index": ("band_index", "bandIndex"),
    "analysis_profile_id": ("analysis_profile_id", "analysisProfileId"),
    "requested_analysis_profile_id": ("requested_analysis_profile_id", "requestedAnalysisProfileId"),
    "profile_overrides_hash": ("profile_overrides_hash", "profileOverridesHash"),
}


@dataclass(frozen=True)
class AudioFeatureDescriptor:
    """One requested (or cached) audio feature."""

    feature_key: str
    calculator_id: Optional[str] = None
    band_index: Optional[int] = None
    analysis_profile_id: Optional[str] = None
    requested_analysis_profile_id: Optional[str] = None
    profile_overrides_hash: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_key": self.feature_key,
            "calculator_id": self.calculator_id,
            "band_index": self.band_index,
            "analysis_profile_id": self.analysis_profile_id,
            "requested_analysis_profile_id": self.requested_analysis_profile_id,
            "profile_overrides_hash": self.profile_overrides_hash,
        }


class ParsedDescriptorKey(NamedTuple):
    feature_key: str
    calculator_id: Optional[str]
    band_index: Optional[int]
    profile_key: str
    overrides_hash: Optional[str]


def clean_optional_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def clean_band_index(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        value = int(value)
    if not isinstance(value, int):
        try:
            value = int(str(value).strip())
        except ValueError:
            return None
    return max(value, 0)


def _canonical_token(value: Optional[str]) -> Optional[str]:
    cleaned = clean_optional_string(value)
    return cleaned.casefold() if cleaned else None


def coerce_descriptor(value: "AudioFeatureDescriptor | Mapping[str, Any]") -> AudioFeatureDescriptor:
    """Build a descriptor from a descriptor or a mapping.

    Mappings may use snake_case or camelCase keys, in any order.

    Raises:
        ValueError: If no feature key can be found.
    """
    if isinstance(value, AudioFeatureDescriptor):
        return value
    if not isinstance(value, Mapping):
        raise ValueError(f"Cannot build a descriptor from {type(value).__name__}")

    fields: dict[str, Any] = {}
    for name, aliases in _FIELD_ALIASES.items():
        for alias in aliases:
            if alias in value and value[alias] is not None:
                fields[name] = value[alias]
                break

    feature_key = clean_optional_string(fields.get("feature_key"))
    if not feature_key:
        raise ValueError("Descriptor requires a feature key")

    return AudioFeatureDescriptor(
        feature_key=feature_key,
        calculator_id=clean_optional_string(fields.get("calculator_id")),
        band_index=clean_band_index(fields.get("band_index")),
        analysis_profile_id=clean_optional_string(fields.get("analysis_profile_id")),
        requested_analysis_profile_id=clean_optional_string(fields.get("requested_analysis_profile_id")),
        profile_overrides_hash=clean_optional_string(fields.get("profile_overrides_hash")),
    )


def sanitize_analysis_profile_id(value: Any) -> str:
    """Normalize a profile id, mapping null/empty/invalid ids to ``"default"``.

    Never raises.
    """
    cleaned = clean_optional_string(value)
    if cleaned is None or not _VALID_PROFILE_ID.match(cleaned):
        return DEFAULT_ANALYSIS_PROFILE_ID
    return cleaned


def is_adhoc_profile_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(ADHOC_PROFILE_PREFIX)


def build_adhoc_profile_id(overrides_hash: str) -> str:
    return f"{ADHOC_PROFILE_PREFIX}{overrides_hash}"


def adhoc_hash_from_profile_id(profile_id: Any) -> Optional[str]:
    if not is_adhoc_profile_id(profile_id):
        return None
    return clean_optional_string(profile_id[len(ADHOC_PROFILE_PREFIX):])


def _match_parts(descriptor: AudioFeatureDescriptor) -> list[str]:
    parts = [f"feature:{_canonical_token(descriptor.feature_key) or 'unknown'}"]
    calculator = _canonical_token(descriptor.calculator_id)
    if calculator:
        parts.append(f"calc:{calculator}")
    if descriptor.band_index is not None:
        parts.append(f"band:{descriptor.band_index}")
    return parts


def build_descriptor_match_key(descriptor: "AudioFeatureDescriptor | Mapping[str, Any]") -> str:
    """Canonical (feature, calculator, band) key, independent of the profile."""
    return _MATCH_PREFIX + "|".join(_match_parts(coerce_descriptor(descriptor)))


def build_descriptor_id(descriptor: "AudioFeatureDescriptor | Mapping[str, Any]") -> str:
    """Canonical identity of the whole descriptor, profile fields included."""
    descriptor = coerce_descriptor(descriptor)
    parts = _match_parts(descriptor)
    profile = descriptor.analysis_profile_id or descriptor.requested_analysis_profile_id
    if profile and sanitize_analysis_profile_id(profile) != DEFAULT_ANALYSIS_PROFILE_ID:
        parts.append(f"profile:{sanitize_analysis_profile_id(profile)}")
    if descriptor.profile_overrides_hash:
        parts.append(f"hash:{descriptor.profile_overrides_hash}")
    return _ID_PREFIX + "|".join(parts)


def resolve_descriptor_profile_key(
    descriptor: AudioFeatureDescriptor,
    fallback_profile_id: Optional[str] = None,
) -> str:
    """Resolve the profile a descriptor is computed under.

    Order: the descriptor's own profile, the ad hoc id implied by its override
    hash, the profile the author asked for, the fallback (usually the intent
    profile), then ``"default"``.
    """
    if descriptor.analysis_profile_id:
        return sanitize_analysis_profile_id(descriptor.analysis_profile_id)
    if descriptor.profile_overrides_hash:
        return sanitize_analysis_profile_id(build_adhoc_profile_id(descriptor.profile_overrides_hash))
    if descriptor.requested_analysis_profile_id:
        return sanitize_analysis_profile_id(descriptor.requested_analysis_profile_id)
    return sanitize_analysis_profile_id(fallback_profile_id)


def build_descriptor_key(match_key: str, profile_key: Any, overrides_hash: Optional[str] = None) -> str:
    key = f"{match_key}|profile:{sanitize_analysis_profile_id(profile_key)}"
    if overrides_hash:
        key += f"|hash:{overrides_hash}"
    return key


def parse_descriptor_key(key: str) -> ParsedDescriptorKey:
    """Split a descriptor key back into its components.

    Raises:
        ValueError: If the key is not a descriptor key.
    """
    if not isinstance(key, str) or not key.startswith(_MATCH_PREFIX):
        raise ValueError(f"Malformed descriptor key: {key!r}")

    values: dict[str, str] = {}
    for part in key[len(_MATCH_PREFIX):].split("|"):
        name, sep, value = part.partition(":")
        if not sep or not value or name in values:
            raise ValueError(f"Malformed descriptor key: {key!r}")
        values[name] = value

    if "feature" not in values or "profile" not in values:
        raise ValueError(f"Malformed descriptor key: {key!r}")
    if set(values) - {"feature", "calc", "band", "profile", "hash"}:
        raise ValueError(f"Malformed descriptor key: {key!r}")

    band_index = None
    if "band" in values:
        if not values["band"].isdigit():
            raise ValueError(f"Malformed descriptor key: {key!r}")
        band_index = int(values["band"])

    return ParsedDescriptorKey(
        feature_key=values["feature"],
        calculator_id=values.get("calc"),
        band_index=band_index,
        profile_key=values["profile"],
        overrides_hash=values.get("hash"),
    )


def make_group_key(audio_source_id: str, profile_id: Any) -> str:
    """Key of one (audio source, profile) pair: ``<source>__<profile>``."""
    return f"{audio_source_id}{GROUP_KEY_SEPARATOR}{sanitize_analysis_profile_id(profile_id)}"


def split_group_key(group_key: str) -> tuple[str, str]:
    source, sep, profile = group_key.rpartition(GROUP_KEY_SEPARATOR)
    if not sep or not source:
        return group_key, DEFAULT_ANALYSIS_PROFILE_ID
    return source, sanitize_analysis_profile_id(profile)


def build_feature_track_key(feature_key: Any, profile_id: Any = None) -> str:
    feature = clean_optional_string(feature_key) or "unknown"
    return f"{feature}{FEATURE_TRACK_KEY_SEPARATOR}{sanitize_analysis_profile_id(profile_id)}"


def parse_feature_track_key(key: Any) -> tuple[str, Optional[str]]:
    """Return ``(feature_key, profile_id)``; the profile is None for bare keys."""
    cleaned = clean_optional_string(key)
    if not cleaned:
        return "", None
    feature, sep, profile = cleaned.rpartition(FEATURE_TRACK_KEY_SEPARATOR)
    feature = feature.strip()
    if not sep or not feature:
        return cleaned, None
    return feature, clean_optional_string(profile)


def build_descriptor_label(descriptor: Optional[AudioFeatureDescriptor]) -> str:
    if descriptor is None:
        return "Unknown descriptor"
    parts = [descriptor.feature_key or "unknown"]
    if descriptor.band_index is not None:
        parts.append(f"band {descriptor.band_index}")
    return " · ".join(parts)
