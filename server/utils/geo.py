# 距离与配送时间估算工具

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

EARTH_RADIUS_KM = 6371


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Haversine公式计算两点球面距离

    Returns:
        距离（公里）
    """
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def extract_coordinates(point: Optional[Dict[str, Any]]) -> Optional[tuple]:
    """
    从地址或位置字典中取出 (lat, lng)

    支持 latitude/longitude 与 lat/lng 两种键名，缺失或非法时返回None
    """
    if not point:
        return None

    lat = point.get("latitude", point.get("lat"))
    lng = point.get("longitude", point.get("lng"))
    if lat is None or lng is None:
        return None

    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return None

    if not validate_coordinates(lat, lng):
        return None
    return lat, lng


def validate_coordinates(latitude: float, longitude: float) -> bool:
    """验证经纬度范围"""
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def calculate_delivery_time(distance_km: float, average_speed_kmh: float = 30,
                            preparation_time_min: int = 15,
                            now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    根据距离估算送达时间

    Args:
        distance_km: 距离（公里）
        average_speed_kmh: 平均速度，默认30km/h
        preparation_time_min: 备餐时间，默认15分钟
    """
    travel_time_min = distance_km / average_speed_kmh * 60
    total_time_min = preparation_time_min + travel_time_min
    now = now or datetime.now()

    return {
        "distance_km": round(distance_km, 2),
        "travel_time_min": round(travel_time_min),
        "preparation_time_min": preparation_time_min,
        "total_time_min": round(total_time_min),
        "estimated_delivery_time": (now + timedelta(minutes=total_time_min)).isoformat()
    }


def optimize_route(stops: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    最近邻法排列配送站点

    第一个站点视为起点保持不动，其余站点依次选择距当前位置最近者。
    缺少坐标的站点排在末尾，保持原有相对顺序。
    """
    if len(stops) <= 2:
        return list(stops)

    origin = stops[0]
    located = []
    unlocated = []
    for stop in stops[1:]:
        if extract_coordinates(stop):
            located.append(stop)
        else:
            unlocated.append(stop)

    ordered = [origin]
    current = extract_coordinates(origin)
    if current is None:
        return ordered + located + unlocated

    while located:
        nearest = min(located, key=lambda s: haversine_distance(*current, *extract_coordinates(s)))
        located.remove(nearest)
        ordered.append(nearest)
        current = extract_coordinates(nearest)

    return ordered + unlocated
