"""Connectivity reporting and the large-file Wi-Fi-only transfer policy"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from config import settings

logger = logging.getLogger(__name__)

CONNECTION_TYPES = ("wifi", "cellular", "ethernet", "none", "unknown")


@dataclass(frozen=True)
class NetworkStatus:
    connected: bool
    connection_type: str = "unknown"

    @property
    def is_unmetered(self) -> bool:
        return self.connection_type in ("wifi", "ethernet")


OFFLINE = NetworkStatus(connected=False, connection_type="none")


class NetworkMonitor(ABC):
    """Source of the device's current connectivity, supplied by the host."""

    @abstractmethod
    async def current_status(self) -> NetworkStatus: ...


class StaticNetworkMonitor(NetworkMonitor):
    def __init__(self, status: NetworkStatus):
        self.status = status

    def set_status(self, status: NetworkStatus) -> None:
        self.status = status

    async def current_status(self) -> NetworkStatus:
        return self.status


class CallbackNetworkMonitor(NetworkMonitor):
    """Wraps a host-provided async probe; probe errors count as offline."""

    def __init__(self, probe: Callable[[], Awaitable[NetworkStatus]]):
        self.probe = probe

    async def current_status(self) -> NetworkStatus:
        try:
            return await self.probe()
        except Exception as e:
            logger.warning(f"Network probe failed, treating as offline: {e}")
            return OFFLINE


class TransferPolicy:
    def __init__(self, wifi_only: Optional[bool] = None, threshold_mb: Optional[int] = None):
        self.wifi_only = settings.LARGE_FILE_WIFI_ONLY if wifi_only is None else wifi_only
        self.threshold_bytes = (settings.WIFI_ONLY_THRESHOLD_MB if threshold_mb is None else threshold_mb) * 1024 * 1024

    def can_transfer(self, size: int, status: NetworkStatus) -> bool:
        """Large payloads wait for an unmetered connection when the policy says so."""
        if not status.connected:
            return False
        if not self.wifi_only or size <= self.threshold_bytes:
            return True
        return status.is_unmetered
