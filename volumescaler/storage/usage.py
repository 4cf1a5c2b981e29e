"""Disk usage measurement for mounted volumes."""

from abc import ABC, abstractmethod
import logging
import math
import os

import psutil

from volumescaler.models.models import UsageSample
from volumescaler.utils.errors import MeasurementUnavailable

logger = logging.getLogger(__name__)

GIB = 1024 ** 3


class UsageSampler(ABC):
    """Measures used space on a mount relative to the requested capacity."""

    @abstractmethod
    def measure(self, mount_path: str, requested_gi: float) -> UsageSample:
        """Measure usage at mount_path.

        Raises:
            MeasurementUnavailable: If the path is missing or usage cannot be read
        """


def build_sample(used_bytes: float, requested_gi: float) -> UsageSample:
    """Convert raw used bytes into a sample relative to the requested size."""
    if requested_gi <= 0:
        raise MeasurementUnavailable(f"requested size must be positive, got {requested_gi}")
    used_gi = used_bytes / GIB
    usage_percent = int(math.floor(used_gi / requested_gi * 100))
    return UsageSample(used_gi=int(math.floor(used_gi + 0.5)), usage_percent=usage_percent)


class DiskUsageSampler(UsageSampler):
    """Samples filesystem usage with psutil."""

    def measure(self, mount_path: str, requested_gi: float) -> UsageSample:
        if not os.path.exists(mount_path):
            raise MeasurementUnavailable(f"mount path '{mount_path}' not found")
        try:
            usage = psutil.disk_usage(mount_path)
        except OSError as e:
            raise MeasurementUnavailable(f"failed to read usage of '{mount_path}': {str(e)}")
        sample = build_sample(usage.used, requested_gi)
        logger.debug(f"Measured {mount_path}: used={usage.used} bytes, {sample.usage_percent}%")
        return sample
