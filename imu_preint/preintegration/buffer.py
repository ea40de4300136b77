"""
Time-ordered store of raw IMU samples.
"""
from bisect import bisect_right
from typing import List, Optional
from ..core.errors import OrderingError
from ..core.types import ImuSample


class SampleBuffer:
    """
    Samples in non-decreasing timestamp order.

    Not thread-safe on its own, the owning session serializes access.
    """

    def __init__(self):
        self._samples: List[ImuSample] = []
        self._times: List[float] = []

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self):
        return iter(list(self._samples))

    @property
    def oldest_time(self) -> Optional[float]:
        return self._times[0] if self._times else None

    @property
    def newest_time(self) -> Optional[float]:
        return self._times[-1] if self._times else None

    def clear(self):
        self._samples.clear()
        self._times.clear()

    def append(self, sample: ImuSample):
        """
        Append a sample.

        Raises:
            OrderingError: If the sample is older than the newest one
        """
        if self._times and sample.timestamp < self._times[-1]:
            raise OrderingError(
                f"Sample at {sample.timestamp:.9f} is older than newest buffered "
                f"sample at {self._times[-1]:.9f}",
                sample.timestamp, self._times[-1])
        self._samples.append(sample)
        self._times.append(sample.timestamp)

    def between(self, start: float, end: float) -> List[ImuSample]:
        """Samples with start < timestamp <= end."""
        lo = bisect_right(self._times, start)
        hi = bisect_right(self._times, end)
        return self._samples[lo:hi]

    def after(self, start: float) -> List[ImuSample]:
        """Samples with timestamp > start."""
        return self._samples[bisect_right(self._times, start):]

    def latest_at_or_before(self, time: float) -> Optional[ImuSample]:
        """Newest sample with timestamp <= time."""
        index = bisect_right(self._times, time)
        if index == 0:
            return None
        return self._samples[index - 1]

    def drop_before(self, time: float) -> int:
        """
        Drop samples that are no longer needed to integrate from `time`.

        The newest sample at or before `time` is kept, its reading is held
        up to the next sample.

        Returns:
            Number of samples removed
        """
        index = bisect_right(self._times, time) - 1
        if index <= 0:
            return 0
        del self._samples[:index]
        del self._times[:index]
        return index
