"""
Port Allocator - Dynamic port assignment for plugin backends.

Keeps the plugin-name -> port table for one runtime process. Each
allocator instance owns its own table, so independent instances (and
tests) never share state.
"""

import asyncio
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.config import settings
from naap_runtime.core.exceptions import PortRangeExhausted
from naap_runtime.core.models import InstallationStatus, PluginInstallation

logger = structlog.get_logger()


@dataclass
class PortAllocation:
    """A port held by a plugin."""
    port: int
    plugin_name: str
    allocated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PortAllocator:
    """
    Plugin backend port allocator.

    Features:
    - Allocation from a configurable range, skipping reserved ports
    - Idempotent allocation per plugin name
    - Idempotent release (unknown names are a no-op)
    - Optional OS-level check to skip ports already bound on the host
    - Rehydration from installed plugins on startup
    """

    def __init__(
        self,
        min_port: Optional[int] = None,
        max_port: Optional[int] = None,
        reserved_ports: Optional[set[int]] = None,
        probe_host: bool = False,
    ):
        self.min_port = min_port if min_port is not None else settings.PLUGIN_PORT_MIN
        self.max_port = max_port if max_port is not None else settings.PLUGIN_PORT_MAX
        if self.min_port > self.max_port:
            raise ValueError(f"Invalid port range {self.min_port}-{self.max_port}")

        self.reserved_ports = (
            set(reserved_ports) if reserved_ports is not None else set(settings.PLUGIN_RESERVED_PORTS)
        )
        self.probe_host = probe_host

        self._by_plugin: dict[str, PortAllocation] = {}
        self._by_port: dict[int, str] = {}
        self._lock = asyncio.Lock()

    async def allocate_port(self, plugin_name: str) -> int:
        """
        Allocate a port for a plugin.

        Re-allocating for a plugin that already holds a port returns the
        same port.

        Raises:
            PortRangeExhausted: If every port in the range is taken
        """
        async with self._lock:
            existing = self._by_plugin.get(plugin_name)
            if existing:
                logger.debug("Port already allocated", plugin_name=plugin_name, port=existing.port)
                return existing.port

            for port in range(self.min_port, self.max_port + 1):
                if port in self.reserved_ports or port in self._by_port:
                    continue
                if self.probe_host and not self._is_port_free_on_host(port):
                    continue

                self._record(plugin_name, port)
                logger.info("Port allocated", plugin_name=plugin_name, port=port)
                return port

        raise PortRangeExhausted(
            f"No available ports in range {self.min_port}-{self.max_port}",
            details={"plugin_name": plugin_name},
        )

    def release_port(self, plugin_name: str) -> Optional[int]:
        """
        Release the port held by a plugin.

        Safe to call repeatedly or for a plugin that never held a port.

        Returns:
            The released port, or None if nothing was allocated
        """
        allocation = self._by_plugin.pop(plugin_name, None)
        if allocation is None:
            return None

        self._by_port.pop(allocation.port, None)
        logger.info("Port released", plugin_name=plugin_name, port=allocation.port)
        return allocation.port

    async def reserve_port(self, plugin_name: str, port: int) -> bool:
        """
        Pin a specific port to a plugin.

        Returns:
            False if the port is reserved, outside the range, or held by
            another plugin
        """
        async with self._lock:
            if port in self.reserved_ports:
                return False
            if not self.min_port <= port <= self.max_port:
                return False

            holder = self._by_port.get(port)
            if holder is not None:
                return holder == plugin_name

            if plugin_name in self._by_plugin:
                self.release_port(plugin_name)

            self._record(plugin_name, port)
            logger.info("Port reserved", plugin_name=plugin_name, port=port)
            return True

    def get_port_allocation(self, plugin_name: str) -> Optional[int]:
        allocation = self._by_plugin.get(plugin_name)
        return allocation.port if allocation else None

    def get_all_allocations(self) -> list[PortAllocation]:
        return sorted(self._by_plugin.values(), key=lambda a: a.port)

    def is_port_allocated(self, port: int) -> bool:
        return port in self._by_port or port in self.reserved_ports

    def get_pool_status(self) -> dict:
        """Summary of the allocator's range for diagnostics."""
        reserved_in_range = {p for p in self.reserved_ports if self.min_port <= p <= self.max_port}
        total = self.max_port - self.min_port + 1 - len(reserved_in_range)
        allocated = len(self._by_port)

        return {
            "range": f"{self.min_port}-{self.max_port}",
            "total": total,
            "allocated": allocated,
            "available": total - allocated,
            "allocations": {a.plugin_name: a.port for a in self.get_all_allocations()},
        }

    async def initialize_from_database(self, db: AsyncSession) -> int:
        """
        Rebuild allocations from installed plugins.

        Uses the recorded container port, falling back to the port declared
        in the installed version's manifest. Store failures are logged and
        leave the table empty.

        Returns:
            Number of allocations restored
        """
        try:
            result = await db.execute(
                select(PluginInstallation).where(
                    PluginInstallation.status == InstallationStatus.INSTALLED
                )
            )
            installations = result.scalars().all()
        except Exception as e:
            logger.warning("Failed to restore port allocations", error=str(e))
            return 0

        restored = 0
        for install in installations:
            port = install.container_port
            if port is None and install.version is not None:
                backend = (install.version.manifest or {}).get("backend") or {}
                port = backend.get("port")
            if not port:
                continue

            name = install.package.name
            holder = self._by_port.get(port)
            if holder is not None and holder != name:
                logger.warning("Port conflict while restoring allocations", plugin_name=name, port=port, holder=holder)
                continue

            self._record(name, port)
            restored += 1

        logger.info("Port allocator initialized", restored=restored)
        return restored

    def _record(self, plugin_name: str, port: int) -> None:
        self._by_plugin[plugin_name] = PortAllocation(port=port, plugin_name=plugin_name)
        self._by_port[port] = plugin_name

    def _is_port_free_on_host(self, port: int) -> bool:
        """True when nothing is listening on the port locally."""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.settimeout(1)
                return s.connect_ex(("127.0.0.1", port)) != 0
        except OSError:
            # If we can't check, assume available
            return True
