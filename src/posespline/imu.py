import numpy as np


class IMUFrame:
    """
    One timestamped IMU reading.

    Args:
        timestamp (float): Sample time.
        gyro (array_like): (3,) angular velocity in the sensor frame (rad/s).
        acce (array_like, optional): (3,) specific force in the sensor frame (m/s^2).
    """
    __slots__ = ('_timestamp', '_gyro', '_acce')

    def __init__(self, timestamp, gyro, acce=None):
        gyro = np.array(gyro, dtype=float)
        if gyro.shape != (3,):
            raise ValueError("gyro must be a (3,) vector.")
        if acce is not None:
            acce = np.array(acce, dtype=float)
            if acce.shape != (3,):
                raise ValueError("acce must be a (3,) vector.")
            acce.setflags(write=False)
        gyro.setflags(write=False)
        self._timestamp = float(timestamp)
        self._gyro = gyro
        self._acce = acce

    @property
    def timestamp(self):
        return self._timestamp

    @property
    def gyro(self):
        return self._gyro

    @property
    def acce(self):
        return self._acce

    def __repr__(self):
        return f"IMUFrame(timestamp={self._timestamp}, gyro={self._gyro.tolist()})"
