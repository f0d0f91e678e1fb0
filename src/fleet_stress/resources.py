"""Resource usage figures (memory, CPU) reported alongside fleet metrics."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import psutil

from .config import ConfigurationError

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class ResourceUsage:
    memory_mb: float = 0.0
    cpu_percent: float = 0.0


class ResourceUsageProvider(ABC):
    """Source of memory/CPU figures. ``sample`` may be sync or async."""

    @abstractmethod
    def sample(self) -> ResourceUsage:
        """Return the current figures or raise if they cannot be read."""


class NullResourceUsage(ResourceUsageProvider):
    """Reports zeros; used when nothing is being observed."""

    def sample(self) -> ResourceUsage:
        return ResourceUsage()


class PsutilResourceUsage(ResourceUsageProvider):
    """
    Reads usage through psutil.

    With a ``pid`` the figures are that process's resident memory and CPU
    share (typically the backend under test). Without one they are the host's
    used memory and overall CPU utilisation.
    """

    def __init__(self, pid: int | None = None):
        self.pid = pid
        self._process = psutil.Process(pid) if pid else None
        # First cpu_percent() call only establishes the baseline
        if self._process is not None:
            self._process.cpu_percent(interval=None)
        else:
            psutil.cpu_percent(interval=None)

    def sample(self) -> ResourceUsage:
        if self._process is not None:
            with self._process.oneshot():
                memory = self._process.memory_info().rss
                cpu = self._process.cpu_percent(interval=None)
        else:
            memory = psutil.virtual_memory().used
            cpu = psutil.cpu_percent(interval=None)
        return ResourceUsage(memory_mb=memory / BYTES_PER_MB, cpu_percent=cpu)


def create_resource_provider(source: str, pid: int = 0) -> ResourceUsageProvider:
    """Build the provider named by ``resource_source``."""
    source = source.strip().lower()
    if source == "none":
        return NullResourceUsage()
    if source == "psutil":
        try:
            provider = PsutilResourceUsage(pid or None)
        except psutil.NoSuchProcess as e:
            raise ConfigurationError([f"backend_pid {pid} does not exist"]) from e
        except psutil.AccessDenied as e:
            raise ConfigurationError([f"Access to backend_pid {pid} denied"]) from e
        logger.info(
            f"Resource usage from psutil ({f'pid {pid}' if pid else 'whole host'})"
        )
        return provider
    raise ConfigurationError([f"Unknown resource_source: {source}"])
