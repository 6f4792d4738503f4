from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from .models import Position, RangePoint, SolverMethod


MIN_POINTS = 3
SINGULAR_DET_EPS = 1e-4


class PositionSolver:
    """基于距离的二维多边定位（无状态）

    - LINEARIZED: 以第一个点为参考做线性化，只取前两个方程，用克莱姆法则求解。
      第4个及以后的锚点不参与修正，这是已知的精度限制。
    - LEAST_SQUARES: 以全部点的均值为参考做线性化，对所有方程求最小二乘解，
      结果与点的顺序无关。
    两种方法都要求至少3个点，几何近似奇异（锚点共线或重合）时返回 None。
    """

    def __init__(self, method: SolverMethod = SolverMethod.LINEARIZED):
        self.method = method

    def solve(self, points: Sequence[RangePoint]) -> Optional[Position]:
        if len(points) < MIN_POINTS:
            return None
        match self.method:
            case SolverMethod.LEAST_SQUARES:
                result = self.least_squares(points)
            case _:
                result = self.linearized(points)
        if result is None or not (math.isfinite(result.x) and math.isfinite(result.y)):
            return None
        return result

    @staticmethod
    def linearized(points: Sequence[RangePoint]) -> Optional[Position]:
        """
        参考圆 (x1, y1, d1) 与第 i 个圆相减得到：
        2(xi-x1)·x + 2(yi-y1)·y = xi²-x1² + yi²-y1² + d1²-di²
        """
        if len(points) < MIN_POINTS:
            return None
        pts = np.array([[p.x, p.y, p.distance] for p in points[:3]], dtype=float)
        ref = pts[0]
        a = np.zeros((2, 2))
        b = np.zeros(2)
        # 极端距离平方溢出为 inf，由 solve() 的有限性检查拦下
        with np.errstate(over="ignore", invalid="ignore"):
            for i, (px, py, pd) in enumerate(pts[1:3]):
                a[i][0] = 2 * (px - ref[0])
                a[i][1] = 2 * (py - ref[1])
                b[i] = px**2 - ref[0] ** 2 + py**2 - ref[1] ** 2 + ref[2] ** 2 - pd**2

            det = a[0][0] * a[1][1] - a[0][1] * a[1][0]
            if abs(det) < SINGULAR_DET_EPS:
                return None
            x = (b[0] * a[1][1] - b[1] * a[0][1]) / det
            y = (a[0][0] * b[1] - a[1][0] * b[0]) / det
        return Position(x=float(x), y=float(y))

    @staticmethod
    def least_squares(points: Sequence[RangePoint]) -> Optional[Position]:
        """所有圆方程减去其均值后求正规方程 (AᵀA)p = Aᵀb"""
        if len(points) < MIN_POINTS:
            return None
        xy = np.array([[p.x, p.y] for p in points], dtype=float)
        d = np.array([p.distance for p in points], dtype=float)
        with np.errstate(over="ignore", invalid="ignore"):
            k = (xy**2).sum(axis=1) - d**2
            a = 2 * (xy - xy.mean(axis=0))
            b = k - k.mean()
            normal = a.T @ a
            if not np.isfinite(b).all() or abs(np.linalg.det(normal)) < SINGULAR_DET_EPS:
                return None
            try:
                result = np.linalg.solve(normal, a.T @ b)
            except np.linalg.LinAlgError:
                return None
        return Position(x=float(result[0]), y=float(result[1]))
