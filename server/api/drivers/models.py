# 司机相关的数据模型

from pydantic import BaseModel, Field


class DriverLocationRequest(BaseModel):
    """司机位置上报"""
    latitude: float = Field(..., ge=-90, le=90, description="纬度")
    longitude: float = Field(..., ge=-180, le=180, description="经度")
