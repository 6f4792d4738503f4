from __future__ import annotations

import json
import re
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, Any, Union

from .errors import InvalidAnchorIdError


MAC_PATTERN = re.compile(r"^([0-9A-F]{2}[:-]){5}([0-9A-F]{2})$")
_SIGNED_INT = re.compile(r"^[+-]?[0-9]+$")

# 主题格式: esp/<锚点MAC>/ble/<设备名>/rssi
TOPIC_PREFIX = "esp"
TOPIC_MIDDLE_TAG = "ble"
TOPIC_SUFFIX_TAG = "rssi"


def canonical_anchor_id(anchor_id: str) -> str:
    """锚点ID规范化：去空白并转大写，内部所有映射都以此为键"""
    if anchor_id is None:
        raise InvalidAnchorIdError("锚点ID不能为空")
    canonical = str(anchor_id).strip().upper()
    if not canonical:
        raise InvalidAnchorIdError("锚点ID不能为空")
    return canonical


def is_mac_address(value: str) -> bool:
    return bool(MAC_PATTERN.match(value.strip().upper()))


@dataclass(frozen=True)
class Position:
    x: float
    y: float

    def as_tuple(self) -> tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class Anchor:
    """固定接收器（ESP mote）。position 为 None 表示尚未放置"""

    id: str
    floor: int = 0
    position: Optional[Position] = None

    @property
    def is_placed(self) -> bool:
        return self.position is not None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"id": self.id, "floor": self.floor}
        if self.position is not None:
            record["position"] = {"x": self.position.x, "y": self.position.y}
        return record


@dataclass(frozen=True)
class DistanceParams:
    # 1米处的RSSI值 (dBm)
    reference_rssi: float = -59.0
    # 路径损耗指数
    path_loss_exponent: float = 2.5

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class Sample:
    anchor_id: str
    distance: float
    captured_at: int
    rssi: Optional[int] = None


@dataclass(frozen=True)
class RangePoint:
    """一次解算的输入：锚点坐标与估算距离"""

    x: float
    y: float
    distance: float


class SolverMethod(Enum):
    LINEARIZED = "linearized"
    LEAST_SQUARES = "least_squares"


@dataclass(frozen=True)
class RssiMessage:
    """
    锚点上报的单条RSSI读数
    """

    anchor_id: str
    device_id: str
    rssi: int

    @classmethod
    def parse(cls, topic: str, payload: Union[bytes, str]) -> Optional["RssiMessage"]:
        """解析 esp/<mac>/ble/<device>/rssi 主题及整数负载，格式不符时返回 None"""
        parts = topic.split("/")
        if len(parts) != 5:
            return None
        prefix, anchor_id, middle, device_id, suffix = parts
        if prefix != TOPIC_PREFIX or middle != TOPIC_MIDDLE_TAG or suffix != TOPIC_SUFFIX_TAG:
            return None
        if not anchor_id.strip() or not device_id:
            return None

        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                return None
        text = payload.strip()
        if not _SIGNED_INT.match(text):
            return None

        return cls(anchor_id=canonical_anchor_id(anchor_id), device_id=device_id, rssi=int(text))


@dataclass(frozen=True)
class PositionUpdate:
    """上行发布的设备位置"""

    device_id: str
    x: float
    y: float
    floor: int
    anchor_count: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)
