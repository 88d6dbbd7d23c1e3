"""
Pipeline configuration.

Aggregates the per-component dataclass configs and builds them from nested
dictionaries or JSON files.
"""

import json
from pathlib import Path
from typing import Dict, Any, Type, TypeVar
from dataclasses import dataclass, field, fields, asdict

from .tracker import TrackerConfig
from .alignment import AlignmentConfig
from .homography import SurfaceConfig
from .detector import DetectorParams
from .capture import CaptureConfig
from .consensus import ConsensusConfig


T = TypeVar("T")


@dataclass
class PipelineConfig:
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    surface: SurfaceConfig = field(default_factory=SurfaceConfig)
    detector: DetectorParams = field(default_factory=DetectorParams)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    auto_capture: bool = True
    enable_logging: bool = False
    log_dir: str = "./logs"
    frame_budget_s: float = 0.1
    metrics_history: int = 60

    def __post_init__(self) -> None:
        if self.frame_budget_s <= 0:
            raise ValueError("frame_budget_s must be > 0")
        if self.metrics_history < 2:
            raise ValueError("metrics_history must be >= 2")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """
        Build a config from a nested dictionary.

        Args:
            data: Mapping of section name -> section dict, plus scalar options

        Returns:
            PipelineConfig

        Raises:
            ValueError: On unknown keys or invalid values
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

        kwargs: Dict[str, Any] = {}
        for name, value in data.items():
            section = _SECTIONS.get(name)
            if section is not None:
                if not isinstance(value, dict):
                    raise ValueError(f"Config section '{name}' must be an object")
                kwargs[name] = _build_section(section, name, value)
            else:
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        targets = data["alignment"].get("target_positions")
        if targets:
            data["alignment"]["target_positions"] = {
                getattr(k, "value", k): list(v) for k, v in targets.items()
            }
        return data


_SECTIONS: Dict[str, type] = {
    "tracker": TrackerConfig,
    "alignment": AlignmentConfig,
    "surface": SurfaceConfig,
    "detector": DetectorParams,
    "capture": CaptureConfig,
    "consensus": ConsensusConfig,
}


def _build_section(section_cls: Type[T], name: str, values: Dict[str, Any]) -> T:
    allowed = {f.name for f in fields(section_cls)}
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {', '.join(unknown)}")
    return section_cls(**values)


def load_config(path: str) -> PipelineConfig:
    """
    Load a PipelineConfig from a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: On malformed JSON or invalid values
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Config root must be an object")
    return PipelineConfig.from_dict(data)
