"""Missing-features popup state machine.

States: hidden, visible, suppressed. Dismissing the popup suppresses it for
the set of missing keys shown at that moment; it comes back as soon as a key
outside that set goes missing, or after everything was resolved once.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable


@dataclass
class MissingPopupState:
    visible: bool = False
    suppressed: bool = False
    last_missing_signature: FrozenSet[str] = field(default_factory=frozenset)
    dismissed_signature: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def state(self) -> str:
        if self.visible:
            return "visible"
        if self.suppressed:
            return "suppressed"
        return "hidden"

    def observe(self, missing: Iterable[str]) -> bool:
        """Feed the current missing keys. Returns True if the state changed."""
        signature = frozenset(missing)
        before = (self.visible, self.suppressed, self.last_missing_signature)

        if not signature:
            self.visible = False
            self.suppressed = False
            self.dismissed_signature = frozenset()
        elif self.suppressed:
            if signature - self.dismissed_signature:
                self.visible = True
                self.suppressed = False
        else:
            self.visible = True
        self.last_missing_signature = signature

        return before != (self.visible, self.suppressed, self.last_missing_signature)

    def dismiss(self) -> bool:
        """Suppress a visible popup. Returns False when it was not visible."""
        if not self.visible:
            return False
        self.visible = False
        self.suppressed = True
        self.dismissed_signature = self.last_missing_signature
        return True

    def reset(self) -> None:
        self.visible = False
        self.suppressed = False
        self.last_missing_signature = frozenset()
        self.dismissed_signature = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "visible": self.visible,
            "suppressed": self.suppressed,
            "missing": sorted(self.last_missing_signature),
            "dismissed": sorted(self.dismissed_signature),
        }
