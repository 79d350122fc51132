"""
Registry of audio feature calculators.

The registry only knows calculator identity (id, version, emitted feature);
the signal processing itself runs elsewhere. It is passed explicitly to the
diff engine so diff computation stays a function of its inputs.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from .shared.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CalculatorInfo:
    """Identity of one registered calculator."""

    id: str
    version: int
    feature_key: str
    label: str = ""
    default_params: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CalculatorInfo":
        calculator_id = str(data.get("id") or "").strip()
        feature_key = str(data.get("feature_key") or data.get("featureKey") or "").strip()
        if not calculator_id or not feature_key:
            raise ValueError("Calculator requires an id and a feature key")
        return cls(
            id=calculator_id,
            version=int(data.get("version", 1)),
            feature_key=feature_key,
            label=str(data.get("label") or ""),
            default_params=dict(data.get("default_params") or data.get("defaultParams") or {}),
        )


# Calculators shipped with the visualizer.
BUILTIN_CALCULATORS = (
    CalculatorInfo(id="mvmnt.spectrogram", version=3, feature_key="spectrogram", label="Spectrogram"),
    CalculatorInfo(id="mvmnt.rms", version=1, feature_key="rms", label="RMS"),
    CalculatorInfo(id="mvmnt.waveform", version=1, feature_key="waveform", label="Waveform"),
    CalculatorInfo(id="mvmnt.pitchWaveform", version=1, feature_key="pitchWaveform", label="Pitch Waveform"),
)


class CalculatorRegistry:
    """Lookup of known calculators by id.

    Ids are matched exactly first, then case-insensitively.
    """

    def __init__(self, calculators: Optional[List[Union[CalculatorInfo, Mapping[str, Any]]]] = None):
        self._calculators: Dict[str, CalculatorInfo] = {}
        for calculator in calculators or []:
            self.register(calculator)

    def register(self, calculator: Union[CalculatorInfo, Mapping[str, Any]]) -> CalculatorInfo:
        """Register (or replace) a calculator."""
        info = calculator if isinstance(calculator, CalculatorInfo) else CalculatorInfo.from_dict(calculator)
        previous = self._calculators.get(info.id)
        if previous is not None and previous != info:
            logger.info(
                "Replacing calculator %s (version %d -> %d)", info.id, previous.version, info.version
            )
        self._calculators[info.id] = info
        return info

    def unregister(self, calculator_id: str) -> bool:
        """Remove a calculator. Returns False if it was not registered."""
        return self._calculators.pop(calculator_id, None) is not None

    def lookup(self, calculator_id: Optional[str]) -> Optional[CalculatorInfo]:
        if not calculator_id:
            return None
        info = self._calculators.get(calculator_id)
        if info is not None:
            return info
        folded = calculator_id.strip().casefold()
        for candidate_id, candidate in self._calculators.items():
            if candidate_id.casefold() == folded:
                return candidate
        return None

    get = lookup

    def find_by_feature(self, feature_key: Optional[str]) -> Optional[CalculatorInfo]:
        """First registered calculator emitting ``feature_key``."""
        if not feature_key:
            return None
        folded = feature_key.strip().casefold()
        for info in self._calculators.values():
            if info.feature_key.casefold() == folded:
                return info
        return None

    def list(self) -> List[CalculatorInfo]:
        return list(self._calculators.values())

    def clear(self) -> None:
        self._calculators.clear()

    def __contains__(self, calculator_id: object) -> bool:
        return isinstance(calculator_id, str) and self.lookup(calculator_id) is not None

    def __iter__(self) -> Iterator[CalculatorInfo]:
        return iter(list(self._calculators.values()))

    def __len__(self) -> int:
        return len(self._calculators)


def create_default_registry() -> CalculatorRegistry:
    """Registry pre-populated with the built-in calculators."""
    return CalculatorRegistry(list(BUILTIN_CALCULATORS))
