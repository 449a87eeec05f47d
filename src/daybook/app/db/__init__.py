from .entries import EntriesRepository
from .day_summaries import DaySummariesRepository
from .device_storage import DeviceStorage, StorageUnavailable

__all__ = [
    "EntriesRepository",
    "DaySummariesRepository",
    "DeviceStorage",
    "StorageUnavailable",
]
