from __future__ import annotations

import logging
import math
import os
from typing import Any, Dict, Iterable, List, Optional, cast

import numpy as np
import pandas as pd

from .errors import DuplicateAnchorError, InvalidAnchorIdError, UnknownAnchorError
from .models import Anchor, Position, canonical_anchor_id


logger = logging.getLogger(__name__)

COLUMNS = ["x", "y", "floor"]


class AnchorRegistry:
    """管理锚点数据的存储与访问（pandas + CSV）

    索引为规范化后的锚点ID，行顺序即添加顺序；x/y 为 NaN 表示未放置。
    注册表只维护自身状态，不会触发任何设备位置的重新计算。
    """

    def __init__(self):
        self._df = self._empty_df()

    # ---- Utils ----
    @staticmethod
    def _empty_df() -> pd.DataFrame:
        df = pd.DataFrame(
            {
                "x": pd.Series(dtype="float64"),
                "y": pd.Series(dtype="float64"),
                "floor": pd.Series(dtype="int64"),
            }
        )
        df.index = pd.Index([], dtype=object, name="id")
        return df

    def _coerce(self) -> None:
        # 行扩展后 pandas 可能把 floor 提升为浮点
        self._df = self._df.astype({"x": "float64", "y": "float64", "floor": "int64"})
        self._df.index.name = "id"

    def _normalize_df(self, df: pd.DataFrame) -> pd.DataFrame:
        if "id" not in df.columns:
            raise KeyError("CSV 文件缺少 'id' 列")
        for col in ["x", "y"]:
            if col not in df.columns:
                df[col] = np.nan
            # 非法坐标视为未放置
            df[col] = pd.to_numeric(df[col], errors="coerce")
        if "floor" not in df.columns:
            df["floor"] = 0
        df["floor"] = pd.to_numeric(df["floor"], errors="coerce").fillna(0)

        df = df[["id", *COLUMNS]].copy()
        df["id"] = df["id"].astype(str).str.strip().str.upper()
        df = df[(df["id"] != "") & (df["id"] != "NAN")].copy()
        # x/y 必须同时存在，否则按未放置处理
        half_placed = df["x"].isna() | df["y"].isna()
        df.loc[half_placed, ["x", "y"]] = np.nan
        df = df.drop_duplicates(subset=["id"], keep="last").set_index("id")
        df = df.astype({"x": "float64", "y": "float64", "floor": "int64"})
        df.index.name = "id"
        return df

    @staticmethod
    def _row_to_anchor(anchor_id: str, row: pd.Series) -> Anchor:
        x = float(row.at["x"])
        y = float(row.at["y"])
        position = None if math.isnan(x) or math.isnan(y) else Position(x=x, y=y)
        return Anchor(id=anchor_id, floor=int(row.at["floor"]), position=position)

    # ---- Load/Save ----
    def load(self, csv_path: str) -> None:
        if not os.path.exists(csv_path):
            logger.info("锚点文件不存在，使用空注册表: %s", csv_path)
            self._df = self._empty_df()
            return
        try:
            df = pd.read_csv(csv_path, dtype={"id": str})
        except pd.errors.EmptyDataError:
            self._df = self._empty_df()
            return
        self._df = self._normalize_df(df)
        logger.info("已加载 %d 个锚点: %s", len(self._df), csv_path)

    def save(self, csv_path: str) -> None:
        # 全量覆盖写入（将索引写为列 id）
        os.makedirs(os.path.dirname(csv_path) or ".", exist_ok=True)
        self._df.to_csv(csv_path, index=True, index_label="id", encoding="utf-8")

    def to_records(self) -> List[Dict[str, Any]]:
        return [anchor.to_record() for anchor in self.all()]

    def from_records(self, records: Iterable[Dict[str, Any]]) -> None:
        """从持久化记录恢复，缺失的可选字段回退为默认值/未放置"""
        rows = []
        for record in records:
            position = record.get("position") or {}
            rows.append(
                {
                    "id": record.get("id"),
                    "x": position.get("x"),
                    "y": position.get("y"),
                    "floor": record.get("floor", 0),
                }
            )
        if not rows:
            self._df = self._empty_df()
            return
        df = pd.DataFrame(rows)
        df = df[df["id"].notna()].copy()
        self._df = self._normalize_df(df)

    # ---- CRUD ----
    def add(self, anchor_id: str, floor: int = 0) -> Anchor:
        aid = canonical_anchor_id(anchor_id)
        if aid in self._df.index:
            raise DuplicateAnchorError(aid)
        self._df.loc[aid, COLUMNS] = [np.nan, np.nan, int(floor)]
        self._coerce()
        return Anchor(id=aid, floor=int(floor))

    def set_position(self, anchor_id: str, x: float, y: float, floor: int) -> Anchor:
        aid = canonical_anchor_id(anchor_id)
        if aid not in self._df.index:
            raise UnknownAnchorError(aid)
        self._df.loc[aid, COLUMNS] = [float(x), float(y), int(floor)]
        self._coerce()
        return Anchor(id=aid, floor=int(floor), position=Position(x=float(x), y=float(y)))

    def remove(self, anchor_id: str) -> bool:
        """删除锚点；未知ID不报错，返回 False"""
        aid = canonical_anchor_id(anchor_id)
        if aid in self._df.index:
            self._df = self._df.drop(index=aid)
            return True
        return False

    def clear(self) -> None:
        self._df = self._empty_df()

    # ---- Accessors ----
    def __len__(self) -> int:
        return len(self._df)

    def has(self, anchor_id: str) -> bool:
        return self.find(anchor_id) is not None

    def find(self, anchor_id: str) -> Optional[Anchor]:
        """按ID查找锚点；空ID或未注册时返回 None"""
        try:
            aid = canonical_anchor_id(anchor_id)
        except InvalidAnchorIdError:
            return None
        if aid not in self._df.index:
            return None
        row = cast(pd.Series, self._df.loc[aid])
        return self._row_to_anchor(aid, row)

    def all(self) -> List[Anchor]:
        return [
            self._row_to_anchor(str(aid), cast(pd.Series, row)) for aid, row in self._df.iterrows()
        ]

    def list_by_floor(self, floor: int) -> List[Anchor]:
        """指定楼层上已放置的锚点，按添加顺序"""
        placed = self._df[(self._df["floor"] == floor) & self._df["x"].notna() & self._df["y"].notna()]
        return [self._row_to_anchor(str(aid), cast(pd.Series, row)) for aid, row in placed.iterrows()]

    def first_unplaced(self) -> Optional[Anchor]:
        unplaced = self._df[self._df["x"].isna() | self._df["y"].isna()]
        if unplaced.empty:
            return None
        aid = str(unplaced.index[0])
        return self._row_to_anchor(aid, cast(pd.Series, unplaced.iloc[0]))
