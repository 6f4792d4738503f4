from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from .anchor_registry import AnchorRegistry
from .models import RangePoint, Sample, canonical_anchor_id


class SampleStore:
    """单个设备的距离样本：每个锚点只保留最近到达的一条"""

    def __init__(self):
        # dict 保持锚点首次出现的顺序，覆盖写入不改变顺序
        self._samples: Dict[str, Sample] = {}

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(list(self._samples.values()))

    def __contains__(self, anchor_id: str) -> bool:
        return canonical_anchor_id(anchor_id) in self._samples

    def record(self, anchor_id: str, distance: float, timestamp: int, rssi: Optional[int] = None) -> Sample:
        """按到达顺序覆盖（last-write-wins），不比较时间戳"""
        aid = canonical_anchor_id(anchor_id)
        sample = Sample(anchor_id=aid, distance=float(distance), captured_at=int(timestamp), rssi=rssi)
        self._samples[aid] = sample
        return sample

    def latest(self, anchor_id: str) -> Optional[Sample]:
        return self._samples.get(canonical_anchor_id(anchor_id))

    def discard(self, anchor_id: str) -> bool:
        return self._samples.pop(canonical_anchor_id(anchor_id), None) is not None

    def prune(self, now: int, staleness_ms: int) -> int:
        """删除过期样本，返回删除数量"""
        stale = [aid for aid, s in self._samples.items() if now - s.captured_at >= staleness_ms]
        for aid in stale:
            del self._samples[aid]
        return len(stale)

    def valid_samples(
        self, now: int, registry: AnchorRegistry, floor: int, staleness_ms: int
    ) -> List[RangePoint]:
        """
        可参与解算的样本：
        - 样本年龄 < staleness_ms
        - 锚点存在且已放置
        - 锚点位于指定楼层
        """
        points: List[RangePoint] = []
        for aid, sample in self._samples.items():
            if now - sample.captured_at >= staleness_ms:
                continue
            anchor = registry.find(aid)
            if anchor is None or anchor.position is None or anchor.floor != floor:
                continue
            points.append(RangePoint(x=anchor.position.x, y=anchor.position.y, distance=sample.distance))
        return points
