"""BLE Localizer package.

This package provides:
- ConfigManager: YAML-based configuration management
- DistanceModel: log-distance RSSI to distance conversion
- AnchorRegistry: anchor positions and floors (pandas + CSV)
- PositionSolver: 2D multilateration
- TrackingEngine: sample ingestion, per-device positions and expiry
- MQTTDataProcessor: MQTT ingestion and position uplink
"""

from .config_manager import ConfigManager
from .distance import DistanceModel, estimate_distance
from .anchor_registry import AnchorRegistry
from .sample_store import SampleStore
from .solver import PositionSolver
from .tracking_engine import TrackedEntity, TrackingEngine
from .mqtt_processor import MQTTDataProcessor

__all__ = [
    "ConfigManager",
    "DistanceModel",
    "estimate_distance",
    "AnchorRegistry",
    "SampleStore",
    "PositionSolver",
    "TrackedEntity",
    "TrackingEngine",
    "MQTTDataProcessor",
]
