"""
NaaP Runtime - Service Container
================================

One RuntimeServices instance per application. It owns the long-lived
in-memory state (port table, monitor registries, resolver cache, pending
audit writes), so separate apps and test cases never share it.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from naap_runtime.core.database import SessionFactory
from naap_runtime.core.gateway.audit import AuditLogger
from naap_runtime.core.gateway.health_scheduler import HealthCheckScheduler, SchedulerConfig
from naap_runtime.core.gateway.resolve import ConnectorResolver
from naap_runtime.core.gateway.team_guard import IdentityClient
from naap_runtime.core.lifecycle.deployment_manager import SlotDeploymentManager
from naap_runtime.core.lifecycle.health_monitor import SlotHealthMonitor
from naap_runtime.core.lifecycle.port_allocator import PortAllocator
from naap_runtime.core.lifecycle.process_monitor import ProcessMonitor
from naap_runtime.core.lifecycle.provisioning import PluginProvisioner

logger = structlog.get_logger()


@dataclass
class RuntimeServices:
    session_factory: SessionFactory
    http_client: httpx.AsyncClient
    port_allocator: PortAllocator
    provisioner: PluginProvisioner
    process_monitor: ProcessMonitor
    deployment_manager: SlotDeploymentManager
    slot_monitor: SlotHealthMonitor
    resolver: ConnectorResolver
    audit: AuditLogger
    identity: IdentityClient
    scheduler: HealthCheckScheduler
    owns_http_client: bool = True

    async def start(self) -> None:
        """Rebuild in-memory state from the database."""
        async with self.session_factory() as db:
            ports = await self.port_allocator.initialize_from_database(db)
            monitored = await self.process_monitor.initialize_from_database(db)
            slots = await self.slot_monitor.initialize_from_database(db)
        logger.info(
            "Runtime services started",
            ports=ports,
            monitored_plugins=monitored,
            monitored_slots=slots,
        )

    async def stop(self) -> None:
        await self.process_monitor.stop_all()
        await self.slot_monitor.shutdown()
        await self.audit.drain()
        if self.owns_http_client:
            await self.http_client.aclose()
        logger.info("Runtime services stopped")


def build_services(
    session_factory: SessionFactory,
    http_client: Optional[httpx.AsyncClient] = None,
    identity_client: Optional[IdentityClient] = None,
    port_allocator: Optional[PortAllocator] = None,
    scheduler_config: Optional[SchedulerConfig] = None,
) -> RuntimeServices:
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient()

    allocator = port_allocator or PortAllocator()
    deployment_manager = SlotDeploymentManager(session_factory)

    return RuntimeServices(
        session_factory=session_factory,
        http_client=client,
        port_allocator=allocator,
        provisioner=PluginProvisioner(allocator, http_client=client),
        process_monitor=ProcessMonitor(http_client=client),
        deployment_manager=deployment_manager,
        slot_monitor=SlotHealthMonitor(session_factory, deployment_manager, http_client=client),
        resolver=ConnectorResolver(session_factory),
        audit=AuditLogger(session_factory),
        identity=identity_client or IdentityClient(http_client=client),
        scheduler=HealthCheckScheduler(session_factory, http_client=client, config=scheduler_config),
        owns_http_client=owns_client,
    )
