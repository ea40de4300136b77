"""
Sensor models for IMU preintegration.
"""
from .imu_model import ImuNoiseModel

__all__ = [
    'ImuNoiseModel',
]
