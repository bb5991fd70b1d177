"""
Plugin Installer - End-to-end install and uninstall of a plugin version.

Install:   resolve version -> provision -> postInstall hook
           -> post-install health check -> start process monitoring
Uninstall: preUninstall hook -> stop monitoring -> reverse provisioning

Any failed step rolls provisioning back and leaves the installation row
in the failed state with the reason recorded.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.exceptions import ErrorCode, NotFound, ValidationFailed
from naap_runtime.core.lifecycle.hook_executor import (
    HookContext,
    HookExecutionResult,
    HookExecutor,
    HookType,
    LifecycleAction,
    validate_hooks,
)
from naap_runtime.core.lifecycle.process_monitor import ProcessMonitor
from naap_runtime.core.lifecycle.provisioning import (
    HealthCheckResult,
    PluginProvisioner,
    ProvisionResult,
    ProvisionStatus,
)
from naap_runtime.core.lifecycle.version_manager import VersionManager, validate_version
from naap_runtime.core.models import InstallationStatus, PluginInstallation, PluginVersion

logger = structlog.get_logger()


@dataclass
class InstallOutcome:
    success: bool
    installation: PluginInstallation
    provision: Optional[ProvisionResult] = None
    health: Optional[HealthCheckResult] = None
    hooks: list[HookExecutionResult] = field(default_factory=list)
    error: Optional[str] = None


class PluginInstaller:
    """Coordinates the lifecycle components for one installation at a time."""

    def __init__(
        self,
        db: AsyncSession,
        provisioner: PluginProvisioner,
        hook_executor: Optional[HookExecutor] = None,
        process_monitor: Optional[ProcessMonitor] = None,
    ):
        self.db = db
        self.provisioner = provisioner
        self.hook_executor = hook_executor or HookExecutor()
        self.process_monitor = process_monitor
        self.versions = VersionManager(db)

    async def _resolve_version(self, package_name: str, version: Optional[str]) -> PluginVersion:
        package = await self.versions.get_package(package_name)
        if package is None:
            raise NotFound(f"Package {package_name} not found")

        if version is None:
            version = await self.versions.get_latest_version(package.id)
            if version is None:
                raise NotFound(f"Package {package_name} has no installable version")

        validation = validate_version(version)
        if not validation.valid:
            raise ValidationFailed(validation.error, code=ErrorCode.INVALID_VERSION)

        result = await self.db.execute(
            select(PluginVersion).where(
                PluginVersion.package_id == package.id,
                PluginVersion.version == version,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFound(f"Version {version} of {package_name} not found")
        return row

    async def install(
        self,
        package_name: str,
        version: Optional[str] = None,
        backend_image: Optional[str] = None,
    ) -> InstallOutcome:
        """
        Install a plugin version.

        Raises:
            NotFound: If the package or version does not exist
            ValidationFailed: If the version or its hooks are invalid
        """
        plugin_version = await self._resolve_version(package_name, version)
        manifest = plugin_version.manifest or {}
        hooks = manifest.get("hooks") or {}

        hook_errors = validate_hooks(hooks)
        if hook_errors:
            raise ValidationFailed("; ".join(hook_errors), details={"errors": hook_errors})

        installation = PluginInstallation(
            package_id=plugin_version.package_id,
            version_id=plugin_version.id,
            status=InstallationStatus.INSTALLING,
        )
        self.db.add(installation)
        await self.db.flush()

        log = logger.bind(plugin_name=package_name, version=plugin_version.version)
        log.info("Plugin installation started")

        provision = await self.provisioner.provision_plugin_infrastructure(
            package_name, manifest, backend_image
        )
        outcome = InstallOutcome(success=False, installation=installation, provision=provision)

        if provision.status == ProvisionStatus.FAILED:
            return await self._fail(outcome, provision.error or "Provisioning failed", rollback=False)

        context = HookContext(
            plugin_name=package_name,
            version=plugin_version.version,
            action=LifecycleAction.INSTALL,
        )
        hook_result = await self.hook_executor.execute_lifecycle_hook(hooks, HookType.POST_INSTALL, context)
        if hook_result is not None:
            outcome.hooks.append(hook_result)
            if not hook_result.success:
                return await self._fail(outcome, f"postInstall hook failed: {hook_result.error}")

        outcome.health = await self.provisioner.perform_post_install_health_check(package_name, provision)
        if not outcome.health.success:
            return await self._fail(outcome, outcome.health.error or "Health check failed")

        installation.status = InstallationStatus.INSTALLED
        installation.container_port = provision.container_port
        installation.database_name = provision.database_name
        installation.container_id = provision.container_id
        installation.error = None
        await self.db.flush()

        if self.process_monitor is not None and provision.container_port:
            backend = manifest.get("backend") or {}
            await self.process_monitor.start_monitoring(
                package_name,
                provision.container_port,
                backend.get("healthCheck") or "/healthz",
            )

        outcome.success = True
        log.info("Plugin installed", container_port=provision.container_port)
        return outcome

    async def _fail(self, outcome: InstallOutcome, error: str, rollback: bool = True) -> InstallOutcome:
        installation = outcome.installation
        package_name = outcome.provision.plugin_name if outcome.provision else None

        if rollback and package_name:
            await self.provisioner.rollback_installation(package_name, outcome.provision)

        installation.status = InstallationStatus.FAILED
        installation.error = error
        await self.db.flush()

        outcome.error = error
        logger.error("Plugin installation failed", plugin_name=package_name, error=error)
        return outcome

    async def uninstall(self, package_name: str) -> InstallOutcome:
        """
        Remove an installed plugin.

        A failing preUninstall hook halts the uninstall and leaves the
        installation in place.

        Raises:
            NotFound: If the plugin is not installed
        """
        package = await self.versions.get_package(package_name)
        installation = None
        if package is not None:
            result = await self.db.execute(
                select(PluginInstallation)
                .where(
                    PluginInstallation.package_id == package.id,
                    PluginInstallation.status == InstallationStatus.INSTALLED,
                )
                .execution_options(populate_existing=True)
            )
            installation = result.scalars().first()
        if installation is None:
            raise NotFound(f"Plugin {package_name} is not installed")

        manifest: dict[str, Any] = installation.version.manifest if installation.version else {}
        outcome = InstallOutcome(success=False, installation=installation)

        context = HookContext(
            plugin_name=package_name,
            version=installation.version.version if installation.version else "",
            action=LifecycleAction.UNINSTALL,
        )
        hook_result = await self.hook_executor.execute_lifecycle_hook(
            manifest.get("hooks"), HookType.PRE_UNINSTALL, context
        )
        if hook_result is not None:
            outcome.hooks.append(hook_result)
            if not hook_result.success:
                outcome.error = f"preUninstall hook failed: {hook_result.error}"
                logger.error("Plugin uninstall halted", plugin_name=package_name, error=outcome.error)
                return outcome

        if self.process_monitor is not None:
            await self.process_monitor.stop_monitoring(package_name)

        provision = ProvisionResult(
            plugin_name=package_name,
            status=ProvisionStatus.PROVISIONED,
            container_port=installation.container_port,
            database_name=installation.database_name,
            container_id=installation.container_id,
        )
        await self.provisioner.rollback_installation(package_name, provision)

        installation.status = InstallationStatus.UNINSTALLED
        await self.db.flush()

        outcome.success = True
        outcome.provision = provision
        logger.info("Plugin uninstalled", plugin_name=package_name)
        return outcome
