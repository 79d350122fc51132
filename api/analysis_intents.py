"""
Analysis intents published by scene elements.

An intent is the complete, current list of features one element needs from
one track. Publishing replaces the element's previous intent wholesale;
publishing an identical intent again is a no-op so that listeners are not
woken up by every re-render of the element.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .descriptor_identity import (
    AudioFeatureDescriptor,
    build_descriptor_id,
    build_descriptor_match_key,
    clean_optional_string,
    coerce_descriptor,
)
from .shared.logger import get_logger

logger = get_logger(__name__)

DescriptorInput = Union[AudioFeatureDescriptor, Mapping[str, Any]]


@dataclass(frozen=True)
class AnalysisIntentDescriptor:
    id: str
    descriptor: AudioFeatureDescriptor
    match_key: str

    @classmethod
    def from_descriptor(cls, descriptor: DescriptorInput) -> "AnalysisIntentDescriptor":
        descriptor = coerce_descriptor(descriptor)
        return cls(
            id=build_descriptor_id(descriptor),
            descriptor=descriptor,
            match_key=build_descriptor_match_key(descriptor),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "descriptor": self.descriptor.to_dict(), "match_key": self.match_key}


@dataclass
class AnalysisIntent:
    """Features one element requires from one track."""

    element_id: str
    element_type: str
    track_ref: str
    descriptors: List[AnalysisIntentDescriptor]
    analysis_profile_id: Optional[str] = None
    requested_at: datetime = field(default_factory=datetime.now)
    profile_registry_delta: Optional[Dict[str, Dict[str, Any]]] = None

    def fingerprint(self) -> str:
        """Content identity, ignoring ``requested_at``."""
        return json.dumps(
            {
                "element_type": self.element_type,
                "track_ref": self.track_ref,
                "analysis_profile_id": self.analysis_profile_id,
                "descriptors": sorted(entry.id for entry in self.descriptors),
                "profiles": self.profile_registry_delta or {},
            },
            sort_keys=True,
            default=str,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "element_type": self.element_type,
            "track_ref": self.track_ref,
            "analysis_profile_id": self.analysis_profile_id,
            "descriptors": [entry.to_dict() for entry in self.descriptors],
            "requested_at": self.requested_at.isoformat(),
            "profile_registry_delta": self.profile_registry_delta,
        }


def build_analysis_intent(
    element_id: str,
    element_type: str,
    track_ref: Optional[str],
    descriptors: Iterable[DescriptorInput],
    analysis_profile_id: Optional[str] = None,
    profile_registry_delta: Optional[Mapping[str, Mapping[str, Any]]] = None,
    requested_at: Optional[datetime] = None,
) -> Optional[AnalysisIntent]:
    """Build an intent, deduplicating descriptors by id.

    Returns None when the element has no track or requests nothing; callers
    should remove the element's intent in that case.

    Raises:
        ValueError: If ``element_id`` is empty or a descriptor has no feature.
    """
    element = clean_optional_string(element_id)
    if not element:
        raise ValueError("Analysis intent requires an element id")

    track = clean_optional_string(track_ref)
    if not track:
        return None

    entries: Dict[str, AnalysisIntentDescriptor] = {}
    for descriptor in descriptors:
        entry = AnalysisIntentDescriptor.from_descriptor(descriptor)
        entries.setdefault(entry.id, entry)
    if not entries:
        return None

    delta = None
    if profile_registry_delta:
        delta = {str(key): dict(value) for key, value in profile_registry_delta.items() if isinstance(value, Mapping)}

    return AnalysisIntent(
        element_id=element,
        element_type=clean_optional_string(element_type) or "unknown",
        track_ref=track,
        descriptors=list(entries.values()),
        analysis_profile_id=clean_optional_string(analysis_profile_id),
        requested_at=requested_at or datetime.now(),
        profile_registry_delta=delta or None,
    )


IntentListener = Callable[[str, Optional[str]], None]


class IntentRegistry:
    """Current intent per element id.

    Listeners are called with ``(event, element_id)`` where event is one of
    ``"published"``, ``"removed"`` or ``"cleared"``.
    """

    def __init__(self):
        self._intents: Dict[str, AnalysisIntent] = {}
        self._fingerprints: Dict[str, str] = {}
        self._listeners: List[IntentListener] = []

    def publish(self, intent: AnalysisIntent) -> bool:
        """Store ``intent``. Returns False if it is identical to the current one."""
        fingerprint = intent.fingerprint()
        if self._fingerprints.get(intent.element_id) == fingerprint:
            return False
        self._intents[intent.element_id] = intent
        self._fingerprints[intent.element_id] = fingerprint
        logger.debug(
            "Intent published for %s on %s (%d descriptors)",
            intent.element_id,
            intent.track_ref,
            len(intent.descriptors),
        )
        self._emit("published", intent.element_id)
        return True

    def remove(self, element_id: str) -> bool:
        if self._intents.pop(element_id, None) is None:
            return False
        self._fingerprints.pop(element_id, None)
        self._emit("removed", element_id)
        return True

    def remove_for_tracks(self, track_ids: Iterable[str]) -> List[str]:
        """Drop intents targeting any of ``track_ids``; returns their element ids."""
        removed_tracks = set(track_ids)
        orphaned = [element_id for element_id, intent in self._intents.items() if intent.track_ref in removed_tracks]
        for element_id in orphaned:
            self.remove(element_id)
        if orphaned:
            logger.info("Removed %d intents targeting deleted tracks", len(orphaned))
        return orphaned

    def get(self, element_id: str) -> Optional[AnalysisIntent]:
        return self._intents.get(element_id)

    def intents(self) -> List[AnalysisIntent]:
        return list(self._intents.values())

    def clear(self) -> None:
        if not self._intents:
            return
        self._intents.clear()
        self._fingerprints.clear()
        self._emit("cleared", None)

    def subscribe(self, listener: IntentListener) -> Callable[[], None]:
        """Register a listener; returns the unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str, element_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, element_id)
            except Exception as e:
                logger.error("Error in intent listener: %s", e)

    def __len__(self) -> int:
        return len(self._intents)

    def __contains__(self, element_id: object) -> bool:
        return element_id in self._intents
