from __future__ import annotations

import math
from typing import Optional

from .errors import LocatorError
from .models import DistanceParams


def estimate_distance(rssi: float, params: DistanceParams) -> float:
    """
    对数距离路径损耗模型：
    distance = 10 ^ ((rssi_at_1m - rssi) / (10 * n))
    不做截断，极端输入可能得到极大或接近0的距离；超出浮点范围时返回 inf
    """
    exponent = (params.reference_rssi - rssi) / (10.0 * params.path_loss_exponent)
    try:
        return math.pow(10, exponent)
    except OverflowError:
        return math.inf


def make_params(reference_rssi: float, path_loss_exponent: float) -> DistanceParams:
    """校验并构造距离参数，路径损耗指数必须为有限正数"""
    try:
        reference_rssi = float(reference_rssi)
        path_loss_exponent = float(path_loss_exponent)
    except (TypeError, ValueError) as e:
        raise LocatorError(f"距离参数无效: {e}") from e
    if not math.isfinite(reference_rssi):
        raise LocatorError(f"参考RSSI必须为有限数值: {reference_rssi}")
    if not math.isfinite(path_loss_exponent) or path_loss_exponent <= 0:
        raise LocatorError(f"路径损耗指数必须为正数: {path_loss_exponent}")
    return DistanceParams(reference_rssi=reference_rssi, path_loss_exponent=path_loss_exponent)


class DistanceModel:
    """基于RSSI的距离估算，参数在引擎范围内共享"""

    def __init__(self, params: Optional[DistanceParams] = None):
        self.params = params or DistanceParams()

    def update_params(self, reference_rssi: float, path_loss_exponent: float) -> DistanceParams:
        self.params = make_params(reference_rssi, path_loss_exponent)
        return self.params

    def rssi_to_distance(self, rssi: float) -> float:
        return estimate_distance(rssi, self.params)
