"""
Service Gateway
===============

Admin-side runtime for service connectors:

- scope / team_guard: ownership scopes and caller authentication
- connectors / templates: connector CRUD and template instantiation
- keys: consumer API keys and rate plans
- resolve: cached connector resolution
- connectivity / health_scheduler: upstream checks
- audit: fire-and-forget audit trail
- proxy: server-side forwarding to third-party APIs
"""

from naap_runtime.core.gateway.audit import AuditEntry, AuditLogger
from naap_runtime.core.gateway.connectivity import ConnectivityResult, test_upstream_connectivity
from naap_runtime.core.gateway.connectors import ConnectorService
from naap_runtime.core.gateway.health_scheduler import HealthCheckScheduler, SchedulerConfig
from naap_runtime.core.gateway.keys import ApiKeyService, PlanService
from naap_runtime.core.gateway.proxy import ExternalProxyConfig, create_external_proxy
from naap_runtime.core.gateway.resolve import ConnectorResolver
from naap_runtime.core.gateway.team_guard import AdminContext, IdentityClient, get_admin_context

__all__ = [
    "AdminContext",
    "ApiKeyService",
    "AuditEntry",
    "AuditLogger",
    "ConnectivityResult",
    "ConnectorResolver",
    "ConnectorService",
    "ExternalProxyConfig",
    "HealthCheckScheduler",
    "IdentityClient",
    "PlanService",
    "SchedulerConfig",
    "create_external_proxy",
    "get_admin_context",
    "test_upstream_connectivity",
]
