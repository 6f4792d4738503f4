from __future__ import annotations


class LocatorError(Exception):
    """定位引擎错误基类"""


class InvalidAnchorIdError(LocatorError, ValueError):
    """锚点ID为空或格式非法"""


class DuplicateAnchorError(LocatorError):
    """锚点ID已存在（不区分大小写）"""

    def __init__(self, anchor_id: str):
        super().__init__(f"锚点已存在: {anchor_id}")
        self.anchor_id = anchor_id


class UnknownAnchorError(LocatorError, KeyError):
    """操作引用了不存在的锚点"""

    def __init__(self, anchor_id: str):
        super().__init__(f"锚点不存在: {anchor_id}")
        self.anchor_id = anchor_id

    def __str__(self) -> str:
        # KeyError 默认会给消息加引号
        return str(self.args[0])


class UnpositionedAnchorError(LocatorError):
    """锚点尚未放置到平面图上"""

    def __init__(self, anchor_id: str):
        super().__init__(f"锚点未放置: {anchor_id}")
        self.anchor_id = anchor_id
