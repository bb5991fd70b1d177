"""
Plugin Lifecycle
================

Provisioning, health-monitoring and rollback of plugin backends.

Components:
- PortAllocator: Per-plugin TCP port assignment
- HookExecutor: postInstall/preUpdate/postUpdate/preUninstall scripts
- VersionManager: Semver validation, conflicts and rollback targets
- PluginProvisioner: Port, database and container setup with health verification
- PluginInstaller: End-to-end install and uninstall
- ProcessMonitor: Backend polling with restart escalation
- SlotHealthMonitor: Blue/green slot health with auto-rollback
- SlotDeploymentManager: Traffic switch between slots
"""

from naap_runtime.core.lifecycle.deployment_manager import DeploymentManager, SlotDeploymentManager
from naap_runtime.core.lifecycle.health_monitor import HealthCheckConfig, SlotHealthMonitor
from naap_runtime.core.lifecycle.hook_executor import HookExecutor
from naap_runtime.core.lifecycle.installer import PluginInstaller
from naap_runtime.core.lifecycle.port_allocator import PortAllocator
from naap_runtime.core.lifecycle.process_monitor import ProcessMonitor, ProcessMonitorConfig
from naap_runtime.core.lifecycle.provisioning import PluginProvisioner
from naap_runtime.core.lifecycle.version_manager import VersionManager

__all__ = [
    "DeploymentManager",
    "HealthCheckConfig",
    "HookExecutor",
    "PluginInstaller",
    "PluginProvisioner",
    "PortAllocator",
    "ProcessMonitor",
    "ProcessMonitorConfig",
    "SlotDeploymentManager",
    "SlotHealthMonitor",
    "VersionManager",
]
