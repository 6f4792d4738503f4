"""
Shared fixtures for the localization engine tests.

Timestamps are integer milliseconds throughout; engines get a fake clock so
tests never depend on wall time.
"""

import math
from typing import Tuple

import pytest

from ble_localizer.anchor_registry import AnchorRegistry
from ble_localizer.config_manager import ConfigManager
from ble_localizer.distance import DistanceModel
from ble_localizer.models import DistanceParams
from ble_localizer.tracking_engine import TrackingEngine


ANCHORS = {
    "AA:AA:AA:AA:AA:01": (0.0, 0.0),
    "AA:AA:AA:AA:AA:02": (10.0, 0.0),
    "AA:AA:AA:AA:AA:03": (0.0, 10.0),
}


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def rssi_for_distance(distance: float, params: DistanceParams) -> float:
    """Inverse of the log-distance model."""
    return params.reference_rssi - 10 * params.path_loss_exponent * math.log10(distance)


def distance_2d(p1: Tuple[float, float], p2: Tuple[float, float]) -> float:
    return math.sqrt((p1[0] - p2[0]) ** 2 + (p1[1] - p2[1]) ** 2)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def params() -> DistanceParams:
    return DistanceParams(reference_rssi=-59.0, path_loss_exponent=2.5)


@pytest.fixture
def registry() -> AnchorRegistry:
    reg = AnchorRegistry()
    for mac, (x, y) in ANCHORS.items():
        reg.add(mac, floor=0)
        reg.set_position(mac, x, y, 0)
    return reg


@pytest.fixture
def engine(registry, params, clock) -> TrackingEngine:
    return TrackingEngine(registry=registry, distance_model=DistanceModel(params), clock=clock)


@pytest.fixture
def config_manager(tmp_path, monkeypatch) -> ConfigManager:
    for key in ("BLE_MQTT_IP", "BLE_RSSI_AT_1M", "BLE_RSSI_PATH_LOSS", "BLE_TRACK_SOLVER"):
        monkeypatch.delenv(key, raising=False)
    cm = ConfigManager(str(tmp_path / "config" / "config.yaml"))
    cm.config["paths"]["anchor_db"] = str(tmp_path / "anchors" / "anchors.csv")
    cm.save_config()
    return cm
