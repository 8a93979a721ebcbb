# 地图服务客户端（距离矩阵）

import httpx
import logging
from typing import Dict, Any, List, Optional, Sequence

from utils.config import Config, resolved_setting
from utils.geo import haversine_distance, extract_coordinates, calculate_delivery_time, optimize_route

logger = logging.getLogger(__name__)


class MapsService:
    """
    地图服务

    distance 优先调用外部距离矩阵接口，失败或未配置时退回Haversine直线距离；
    任一端缺少坐标时返回None，由调用方使用兜底距离。
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[httpx.Client] = None):
        self.config = config or Config()
        self.base_url = resolved_setting(self.config.get("maps.base_url"))
        self.api_key = resolved_setting(self.config.get("maps.api_key"))
        self.timeout = self.config.get("maps.timeout_seconds", 5)
        self.average_speed_kmh = self.config.get("maps.average_speed_kmh", 30)
        self.preparation_time_min = self.config.get("maps.preparation_time_min", 15)
        self._client = client

        if not self.base_url or not self.api_key:
            logger.warning("地图服务配置缺失，将使用Haversine直线距离")
            self.mock_mode = True
        else:
            self.mock_mode = False

    def distance(self, point_a: Optional[Dict[str, Any]], point_b: Optional[Dict[str, Any]]) -> Optional[float]:
        """
        计算两点距离（公里）
        """
        a = extract_coordinates(point_a)
        b = extract_coordinates(point_b)
        if a is None or b is None:
            return None

        if not self.mock_mode:
            try:
                return self._route_distance(a, b)
            except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
                logger.warning(f"距离矩阵接口调用失败，使用直线距离: {str(e)}")

        return haversine_distance(a[0], a[1], b[0], b[1])

    def _route_distance(self, origin: tuple, destination: tuple) -> float:
        params = {
            "origins": f"{origin[0]},{origin[1]}",
            "destinations": f"{destination[0]},{destination[1]}",
            "units": "metric",
            "mode": "driving",
            "key": self.api_key
        }
        if self._client is not None:
            response = self._client.get(self.base_url, params=params, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(self.base_url, params=params)
        response.raise_for_status()

        data = response.json()
        element = data["rows"][0]["elements"][0]
        if element.get("status", "OK") != "OK":
            raise ValueError(f"距离矩阵返回状态 {element.get('status')}")
        return element["distance"]["value"] / 1000

    def estimate_delivery(self, distance_km: float) -> Dict[str, Any]:
        """按配置的平均速度与备餐时间估算送达时间"""
        return calculate_delivery_time(distance_km, self.average_speed_kmh, self.preparation_time_min)

    def optimize_route(self, stops: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return optimize_route(stops)
