"""Build feature descriptors from element options."""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .analysis_profiles import resolve_adhoc_profile
from .calculator_registry import CalculatorRegistry
from .descriptor_identity import (
    DEFAULT_ANALYSIS_PROFILE_ID,
    AudioFeatureDescriptor,
    clean_band_index,
    clean_optional_string,
)


@dataclass
class FeatureDescriptorBuildResult:
    descriptor: AudioFeatureDescriptor
    profile: str
    # Definition of the ad hoc profile, None for named profiles.
    profile_definition: Optional[Dict[str, Any]] = None


def create_feature_descriptor(
    feature: str,
    *,
    calculator_id: Optional[str] = None,
    band_index: Optional[int] = None,
    profile: Optional[str] = None,
    profile_params: Optional[Mapping[str, Any]] = None,
    registry: Optional[CalculatorRegistry] = None,
) -> FeatureDescriptorBuildResult:
    """Create a descriptor for ``feature``.

    The calculator defaults to the first registered calculator emitting the
    feature. ``profile_params`` turn the request into an ad hoc profile whose
    id and override hash are derived from the sanitized parameters.

    Raises:
        ValueError: If ``feature`` is empty.
    """
    feature_key = clean_optional_string(feature)
    if not feature_key:
        raise ValueError("create_feature_descriptor requires a feature key")

    resolved_calculator = clean_optional_string(calculator_id)
    if resolved_calculator is None and registry is not None:
        default = registry.find_by_feature(feature_key)
        resolved_calculator = default.id if default else None

    requested_profile = clean_optional_string(profile)
    adhoc = resolve_adhoc_profile(profile_params, requested_profile)
    if adhoc is not None:
        profile_id, overrides_hash, definition = adhoc
        descriptor = AudioFeatureDescriptor(
            feature_key=feature_key,
            calculator_id=resolved_calculator,
            band_index=clean_band_index(band_index),
            analysis_profile_id=profile_id,
            requested_analysis_profile_id=requested_profile,
            profile_overrides_hash=overrides_hash,
        )
        return FeatureDescriptorBuildResult(descriptor, profile_id, definition)

    descriptor = AudioFeatureDescriptor(
        feature_key=feature_key,
        calculator_id=resolved_calculator,
        band_index=clean_band_index(band_index),
        analysis_profile_id=None,
        requested_analysis_profile_id=requested_profile,
    )
    return FeatureDescriptorBuildResult(descriptor, requested_profile or DEFAULT_ANALYSIS_PROFILE_ID)
