"""
Analysis profile definitions.

A profile is the parameter set (window size, hop size, ...) a calculator runs
with. Named profiles are registered by id; ad hoc profiles come from per
element overrides and are identified by a content hash of the sanitized
overrides, so two elements asking for the same overrides share one cache entry.
"""

import hashlib
import json
from typing import Any, Dict, Mapping, Optional

from .descriptor_identity import (
    DEFAULT_ANALYSIS_PROFILE_ID,
    build_adhoc_profile_id,
    sanitize_analysis_profile_id,
)

NUMERIC_PROFILE_KEYS = (
    "window_size",
    "hop_size",
    "overlap",
    "sample_rate",
    "fft_size",
    "min_decibels",
    "max_decibels",
    "smoothing",
)
STRING_PROFILE_KEYS = ("window",)

_CAMEL_ALIASES = {
    "windowSize": "window_size",
    "hopSize": "hop_size",
    "sampleRate": "sample_rate",
    "fftSize": "fft_size",
    "minDecibels": "min_decibels",
    "maxDecibels": "max_decibels",
}

BUILTIN_PROFILES: Dict[str, Dict[str, Any]] = {
    DEFAULT_ANALYSIS_PROFILE_ID: {
        "window_size": 2048,
        "hop_size": 512,
        "overlap": 2048 / 512,
        "sample_rate": 0,
        "fft_size": None,
        "min_decibels": -80,
        "max_decibels": 0,
        "window": "hann",
    },
}


def get_base_analysis_profile(profile_id: Optional[str]) -> Dict[str, Any]:
    """Return a copy of a built-in profile, falling back to the default one."""
    preset = BUILTIN_PROFILES.get(sanitize_analysis_profile_id(profile_id))
    return dict(preset or BUILTIN_PROFILES[DEFAULT_ANALYSIS_PROFILE_ID])


def sanitize_profile_overrides(overrides: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """Keep only known profile keys with usable values.

    camelCase keys are accepted. Numbers must be finite, strings non-empty;
    an explicit None is kept (it clears the base value). Returns None when
    nothing survives.
    """
    if not isinstance(overrides, Mapping):
        return None

    result: Dict[str, Any] = {}
    for raw_key, value in overrides.items():
        key = _CAMEL_ALIASES.get(raw_key, raw_key)
        if key in NUMERIC_PROFILE_KEYS:
            if value is None:
                result[key] = None
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                if value == value and value not in (float("inf"), float("-inf")):
                    result[key] = value
        elif key in STRING_PROFILE_KEYS:
            if value is None:
                result[key] = None
            elif isinstance(value, str) and value.strip():
                result[key] = value.strip()

    return result or None


def hash_profile_overrides(overrides: Mapping[str, Any]) -> str:
    """Stable content hash of sanitized overrides (key order does not matter)."""
    payload = json.dumps(dict(overrides), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]


def resolve_adhoc_profile(
    overrides: Optional[Mapping[str, Any]],
    base_profile_id: Optional[str] = None,
) -> Optional[tuple[str, str, Dict[str, Any]]]:
    """Build ``(profile_id, overrides_hash, definition)`` for ad hoc overrides.

    Returns None when the overrides are empty after sanitization.
    """
    sanitized = sanitize_profile_overrides(overrides)
    if not sanitized:
        return None
    overrides_hash = hash_profile_overrides(sanitized)
    definition = get_base_analysis_profile(base_profile_id)
    definition.update(sanitized)
    return build_adhoc_profile_id(overrides_hash), overrides_hash, definition


def normalize_profile_definition(definition: Any) -> Dict[str, Any]:
    """Normalize a profile definition mapping to snake_case known keys."""
    if not isinstance(definition, Mapping):
        return {}
    normalized: Dict[str, Any] = {}
    for raw_key, value in definition.items():
        key = _CAMEL_ALIASES.get(raw_key, raw_key)
        if key in NUMERIC_PROFILE_KEYS or key in STRING_PROFILE_KEYS or key == "id":
            normalized[key] = value
    return normalized


def profile_parameters_differ(requested: Any, recorded: Any) -> bool:
    """True when both definitions set a numeric parameter to different values.

    Parameters present on only one side are not compared.
    """
    left = normalize_profile_definition(requested)
    right = normalize_profile_definition(recorded)
    for key in NUMERIC_PROFILE_KEYS:
        a, b = left.get(key), right.get(key)
        if a is None or b is None:
            continue
        try:
            if float(a) != float(b):
                return True
        except (TypeError, ValueError):
            continue
    return False
