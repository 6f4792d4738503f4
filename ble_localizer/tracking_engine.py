from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .anchor_registry import AnchorRegistry
from .config_manager import ConfigManager
from .distance import DistanceModel, make_params
from .errors import UnknownAnchorError, UnpositionedAnchorError
from .models import Anchor, DistanceParams, Position, SolverMethod
from .sample_store import SampleStore
from .solver import PositionSolver


logger = logging.getLogger(__name__)

DEFAULT_STALENESS_MS = 5_000
DEFAULT_INACTIVITY_MS = 30_000
DEFAULT_SWEEP_INTERVAL_MS = 1_000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TrackedEntity:
    """被定位的移动设备"""

    id: str
    last_seen_at: int
    floor: int = 0
    position: Optional[Position] = None
    # 最近一次解算使用的锚点数
    anchor_count: int = 0
    samples: SampleStore = field(default_factory=SampleStore, repr=False)

    @property
    def is_located(self) -> bool:
        return self.position is not None


class TrackingEngine:
    """定位引擎：RSSI样本 -> 距离 -> 样本存储 -> 多边定位 -> 设备位置

    引擎只在单一控制线程中被调用（消息回调与周期清理在同一线程），
    因此内部不加锁。若改为多线程/多任务调用，必须对设备表和锚点注册表加同步。
    锚点几何变化（放置、移动、删除）只影响之后的解算，不会立即重算已有设备位置。
    """

    def __init__(
        self,
        registry: Optional[AnchorRegistry] = None,
        distance_model: Optional[DistanceModel] = None,
        solver: Optional[PositionSolver] = None,
        *,
        staleness_ms: int = DEFAULT_STALENESS_MS,
        inactivity_ms: int = DEFAULT_INACTIVITY_MS,
        sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.registry = registry or AnchorRegistry()
        self.distance_model = distance_model or DistanceModel()
        self.solver = solver or PositionSolver()
        self.staleness_ms = staleness_ms
        self.inactivity_ms = inactivity_ms
        self.sweep_interval_ms = sweep_interval_ms
        self._clock = clock

        self._entities: Dict[str, TrackedEntity] = {}
        self._refresh_listeners: List[Callable[["TrackingEngine"], None]] = []
        self._enabled = False
        self._last_sweep_at: Optional[int] = None

    @classmethod
    def from_config(cls, config_manager: ConfigManager, **kwargs) -> "TrackingEngine":
        """按配置构造引擎并加载锚点文件"""
        rssi_config = config_manager.get_rssi_model_config()
        tracking = config_manager.get_tracking_config()

        params = make_params(
            rssi_config.get("reference_rssi", -59.0),
            rssi_config.get("path_loss_exponent", 2.5),
        )
        try:
            method = SolverMethod(tracking.get("solver", SolverMethod.LINEARIZED.value))
        except ValueError:
            logger.warning("未知的解算方法 %r，使用 linearized", tracking.get("solver"))
            method = SolverMethod.LINEARIZED

        registry = AnchorRegistry()
        registry.load(config_manager.get_anchor_db_path())

        return cls(
            registry=registry,
            distance_model=DistanceModel(params),
            solver=PositionSolver(method),
            staleness_ms=int(tracking.get("staleness_ms", DEFAULT_STALENESS_MS)),
            inactivity_ms=int(tracking.get("inactivity_ms", DEFAULT_INACTIVITY_MS)),
            sweep_interval_ms=int(float(tracking.get("sweep_interval_s", 1.0)) * 1000),
            **kwargs,
        )

    # ---------- Ingestion ----------
    def _placed_anchor(self, anchor_id: str) -> Anchor:
        anchor = self.registry.find(anchor_id)
        if anchor is None:
            raise UnknownAnchorError(str(anchor_id))
        if anchor.position is None:
            raise UnpositionedAnchorError(anchor.id)
        return anchor

    def ingest(
        self, anchor_id: str, entity_id: str, rssi: int, timestamp: Optional[int] = None
    ) -> Optional[TrackedEntity]:
        """
        记录一条RSSI样本并重算该设备位置。
        锚点未注册或未放置时只记录警告日志，不创建/更新任何设备。
        """
        try:
            anchor = self._placed_anchor(anchor_id)
        except (UnknownAnchorError, UnpositionedAnchorError) as e:
            logger.warning("丢弃样本，%s (设备 %s)", e, entity_id)
            return None

        now = self._clock() if timestamp is None else int(timestamp)
        distance = self.distance_model.rssi_to_distance(rssi)

        entity = self._entities.get(entity_id)
        if entity is None:
            entity = TrackedEntity(id=entity_id, last_seen_at=now, floor=anchor.floor)
            self._entities[entity_id] = entity
            logger.info("发现新设备: %s", entity_id)

        entity.samples.record(anchor.id, distance, now, rssi=rssi)
        entity.last_seen_at = max(entity.last_seen_at, now)
        entity.floor = anchor.floor
        # 迟到样本不能让已过期的旧样本重新生效
        self._solve(entity, entity.last_seen_at)
        return entity

    def _solve(self, entity: TrackedEntity, now: int) -> None:
        points = entity.samples.valid_samples(now, self.registry, entity.floor, self.staleness_ms)
        entity.anchor_count = len(points)
        entity.position = self.solver.solve(points)
        if entity.position is not None:
            logger.debug(
                "设备 %s 定位: (%.2f, %.2f), 楼层 %s, 锚点数 %d",
                entity.id,
                entity.position.x,
                entity.position.y,
                entity.floor,
                entity.anchor_count,
            )

    # ---------- Expiry ----------
    def sweep_expired(self, now: Optional[int] = None) -> List[str]:
        """移除超过不活跃阈值的设备，并清掉剩余设备的过期样本"""
        now = self._clock() if now is None else int(now)
        expired = [eid for eid, e in self._entities.items() if now - e.last_seen_at > self.inactivity_ms]
        for eid in expired:
            del self._entities[eid]
            logger.info("设备超时移除: %s", eid)
        for entity in self._entities.values():
            entity.samples.prune(now, self.staleness_ms)
        return expired

    def on_refresh(self, fn: Callable[["TrackingEngine"], None]) -> None:
        """注册清理后的下游刷新回调"""
        assert callable(fn), "fn must be a callable function"
        self._refresh_listeners.append(fn)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self, now: Optional[int] = None) -> None:
        self._enabled = True
        self._last_sweep_at = self._clock() if now is None else int(now)

    def disable(self) -> None:
        self._enabled = False

    def tick(self, now: Optional[int] = None) -> bool:
        """周期调度入口：到达清理间隔时执行清理并通知下游，返回是否执行"""
        if not self._enabled:
            return False
        now = self._clock() if now is None else int(now)
        if self._last_sweep_at is not None and now - self._last_sweep_at < self.sweep_interval_ms:
            return False
        self._last_sweep_at = now
        self.sweep_expired(now)
        for fn in self._refresh_listeners:
            fn(self)
        return True

    # ---------- Anchor commands ----------
    def add_anchor(self, anchor_id: str, floor: int = 0) -> Anchor:
        anchor = self.registry.add(anchor_id, floor)
        logger.info("新增锚点: %s (楼层 %s)", anchor.id, anchor.floor)
        return anchor

    def set_anchor_position(self, anchor_id: str, x: float, y: float, floor: int) -> Anchor:
        anchor = self.registry.set_position(anchor_id, x, y, floor)
        logger.info("锚点 %s 放置于 (%.1f, %.1f), 楼层 %s", anchor.id, x, y, floor)
        return anchor

    def place_next_unplaced(self, x: float, y: float, floor: int) -> Optional[Anchor]:
        """把第一个未放置的锚点放到 (x, y)，全部已放置时返回 None"""
        anchor = self.registry.first_unplaced()
        if anchor is None:
            return None
        return self.set_anchor_position(anchor.id, x, y, floor)

    def remove_anchor(self, anchor_id: str) -> bool:
        removed = self.registry.remove(anchor_id)
        if removed:
            for entity in self._entities.values():
                entity.samples.discard(anchor_id)
            logger.info("删除锚点: %s", anchor_id)
        return removed

    def clear_anchors(self) -> None:
        self.registry.clear()
        for entity in self._entities.values():
            entity.samples = SampleStore()

    def set_distance_params(self, reference_rssi: float, path_loss_exponent: float) -> DistanceParams:
        return self.distance_model.update_params(reference_rssi, path_loss_exponent)

    # ---------- Queries ----------
    def __len__(self) -> int:
        return len(self._entities)

    def get_entity(self, entity_id: str) -> Optional[TrackedEntity]:
        return self._entities.get(entity_id)

    def entities_on(self, floor: int) -> List[TrackedEntity]:
        return [e for e in self._entities.values() if e.floor == floor]

    def anchors_on(self, floor: int) -> List[Anchor]:
        return self.registry.list_by_floor(floor)

    def list_entities(self, name_filter: str = "") -> List[TrackedEntity]:
        """按名称过滤（不区分大小写），最近活跃的排在前面"""
        needle = name_filter.lower()
        matched = [e for e in self._entities.values() if needle in e.id.lower()]
        return sorted(matched, key=lambda e: e.last_seen_at, reverse=True)

    # ---------- Persistence record ----------
    def to_record(self) -> Dict[str, Any]:
        return {
            "anchors": self.registry.to_records(),
            "distance_params": self.distance_model.params.to_dict(),
        }

    def load_record(self, record: Dict[str, Any]) -> None:
        """恢复锚点与距离参数，缺失字段使用默认值；参数非法时不修改任何状态"""
        defaults = DistanceParams()
        params = record.get("distance_params") or {}
        checked = make_params(
            params.get("reference_rssi", defaults.reference_rssi),
            params.get("path_loss_exponent", defaults.path_loss_exponent),
        )
        self.registry.from_records(record.get("anchors") or [])
        self.distance_model.update_params(checked.reference_rssi, checked.path_loss_exponent)
