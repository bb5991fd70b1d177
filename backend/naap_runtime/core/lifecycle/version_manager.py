"""
Version Manager - Semver rules for published plugin versions.

Pure helpers (parse/validate/compare/bump/range match) plus a
session-bound VersionManager for the checks that need stored versions:
conflict detection, latest/rollback resolution, deprecation and publish.
"""

import enum
from dataclasses import dataclass
from typing import Any, Optional

import semver
import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.exceptions import ConflictingState, ErrorCode, NotFound, ValidationFailed
from naap_runtime.core.models import PluginPackage, PluginVersion

logger = structlog.get_logger()


MAX_MAJOR_VERSION = 100


class ReleaseType(str, enum.Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    PRERELEASE = "prerelease"


class ConflictKind(str, enum.Enum):
    DEPRECATED_EXISTS = "deprecated_exists"
    ALREADY_EXISTS = "already_exists"
    NOT_NEWER_THAN_STABLE = "not_newer_than_stable"


@dataclass
class VersionInfo:
    version: str
    major: int
    minor: int
    patch: int
    prerelease: bool
    tag: Optional[str] = None  # alpha, beta, rc


@dataclass
class VersionConflict:
    kind: ConflictKind
    existing_version: str
    requested_version: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "existingVersion": self.existing_version,
            "requestedVersion": self.requested_version,
            "reason": self.reason,
        }


@dataclass
class VersionValidation:
    valid: bool
    error: Optional[str] = None


# ==========================================================================
# Pure helpers
# ==========================================================================

def parse_version(version: str) -> Optional[VersionInfo]:
    try:
        parsed = semver.Version.parse(version)
    except (ValueError, TypeError):
        return None

    tag = None
    if parsed.prerelease:
        head = parsed.prerelease.split(".")[0]
        tag = None if head.isdigit() else head

    return VersionInfo(
        version=str(parsed),
        major=parsed.major,
        minor=parsed.minor,
        patch=parsed.patch,
        prerelease=parsed.prerelease is not None,
        tag=tag,
    )


def is_prerelease(version: str) -> bool:
    info = parse_version(version)
    return bool(info and info.prerelease)


def validate_version(version: str) -> VersionValidation:
    """Reject non-semver strings and implausibly large major versions."""
    info = parse_version(version)
    if info is None:
        return VersionValidation(
            valid=False,
            error=f"Invalid version format: {version}. Use semver (e.g., 1.0.0, 1.0.0-beta.1)",
        )

    if info.major > MAX_MAJOR_VERSION:
        return VersionValidation(valid=False, error=f"Major version cannot exceed {MAX_MAJOR_VERSION}")

    return VersionValidation(valid=True)


def compare_versions(a: str, b: str) -> int:
    return semver.Version.parse(a).compare(b)


def is_newer_version(a: str, b: str) -> bool:
    return compare_versions(a, b) > 0


def get_next_version(
    current: str,
    release_type: ReleaseType,
    prerelease_tag: Optional[str] = None,
) -> Optional[str]:
    try:
        parsed = semver.Version.parse(current)
    except ValueError:
        return None

    if release_type == ReleaseType.MAJOR:
        return str(parsed.bump_major())
    if release_type == ReleaseType.MINOR:
        return str(parsed.bump_minor())
    if release_type == ReleaseType.PATCH:
        return str(parsed.bump_patch())
    return str(parsed.bump_prerelease(prerelease_tag or "rc"))


def match_version_range(versions: list[str], version_range: str) -> Optional[str]:
    """
    Highest version satisfying every comma-separated condition.

    Conditions use semver match syntax (">=1.2.0", "<2.0.0", "==1.4.1");
    "*" or an empty range matches anything.
    """
    conditions = [c.strip() for c in version_range.split(",") if c.strip() not in ("", "*")]

    matching = []
    for candidate in versions:
        try:
            parsed = semver.Version.parse(candidate)
            if all(parsed.match(cond) for cond in conditions):
                matching.append(parsed)
        except ValueError:
            continue

    return str(max(matching)) if matching else None


# ==========================================================================
# Store-backed operations
# ==========================================================================

class VersionManager:
    """Version operations for packages stored in the registry."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _versions(self, package_id: str, include_deprecated: bool = True) -> list[PluginVersion]:
        query = select(PluginVersion).where(PluginVersion.package_id == package_id)
        if not include_deprecated:
            query = query.where(PluginVersion.deprecated.is_(False))
        result = await self.db.execute(query.order_by(PluginVersion.published_at.desc()))
        return list(result.scalars().all())

    async def check_version_conflict(self, package_id: str, new_version: str) -> Optional[VersionConflict]:
        """
        Check a proposed version against what the package already has.

        Prerelease versions may sit below the current stable line; stable
        versions must be strictly greater than the latest non-deprecated
        stable version.

        Returns:
            VersionConflict describing the problem, or None
        """
        existing = await self._versions(package_id)

        exact = next((v for v in existing if v.version == new_version), None)
        if exact is not None:
            if exact.deprecated:
                return VersionConflict(
                    kind=ConflictKind.DEPRECATED_EXISTS,
                    existing_version=new_version,
                    requested_version=new_version,
                    reason="Version exists but is deprecated. Consider using a new version number.",
                )
            return VersionConflict(
                kind=ConflictKind.ALREADY_EXISTS,
                existing_version=new_version,
                requested_version=new_version,
                reason="Version already exists. Increment the version number and try again.",
            )

        if is_prerelease(new_version):
            return None

        stable = [
            v.version for v in existing
            if not v.deprecated and parse_version(v.version) and not is_prerelease(v.version)
        ]
        if not stable:
            return None

        latest_stable = max(stable, key=semver.Version.parse)
        if not is_newer_version(new_version, latest_stable):
            return VersionConflict(
                kind=ConflictKind.NOT_NEWER_THAN_STABLE,
                existing_version=latest_stable,
                requested_version=new_version,
                reason=f"New stable version must be greater than current stable ({latest_stable})",
            )

        return None

    async def get_version_history(self, package_id: str) -> list[dict[str, Any]]:
        return [
            {
                "version": v.version,
                "publishedAt": v.published_at,
                "deprecated": v.deprecated,
                "deprecationMsg": v.deprecation_msg,
                "downloads": v.downloads,
            }
            for v in await self._versions(package_id)
        ]

    async def get_latest_version(self, package_id: str, include_prerelease: bool = False) -> Optional[str]:
        candidates = [
            v.version for v in await self._versions(package_id, include_deprecated=False)
            if parse_version(v.version) and (include_prerelease or not is_prerelease(v.version))
        ]
        if not candidates:
            return None
        return max(candidates, key=semver.Version.parse)

    async def get_rollback_target(self, package_id: str, current_version: str) -> Optional[str]:
        """Newest non-deprecated version strictly older than current_version."""
        older = [
            v.version for v in await self._versions(package_id, include_deprecated=False)
            if parse_version(v.version) and compare_versions(v.version, current_version) < 0
        ]
        if not older:
            return None
        return max(older, key=semver.Version.parse)

    async def check_for_upgrade(
        self,
        package_id: str,
        current_version: str,
        include_prerelease: bool = False,
    ) -> dict[str, Any]:
        latest = await self.get_latest_version(package_id, include_prerelease)
        if latest and is_newer_version(latest, current_version):
            return {"available": True, "latestVersion": latest}
        return {"available": False}

    async def deprecate_version(self, package_id: str, version: str, message: Optional[str] = None) -> bool:
        result = await self.db.execute(
            update(PluginVersion)
            .where(PluginVersion.package_id == package_id, PluginVersion.version == version)
            .values(deprecated=True, deprecation_msg=message)
        )
        await self.db.flush()
        if result.rowcount:
            logger.info("Version deprecated", package_id=package_id, version=version)
        return result.rowcount > 0

    async def undeprecate_version(self, package_id: str, version: str) -> bool:
        result = await self.db.execute(
            update(PluginVersion)
            .where(PluginVersion.package_id == package_id, PluginVersion.version == version)
            .values(deprecated=False, deprecation_msg=None)
        )
        await self.db.flush()
        return result.rowcount > 0

    async def delete_version(self, package_id: str, version: str) -> bool:
        result = await self.db.execute(
            delete(PluginVersion).where(
                PluginVersion.package_id == package_id,
                PluginVersion.version == version,
            )
        )
        await self.db.flush()
        if result.rowcount:
            logger.info("Version deleted", package_id=package_id, version=version)
        return result.rowcount > 0

    async def get_package(self, name: str) -> Optional[PluginPackage]:
        result = await self.db.execute(select(PluginPackage).where(PluginPackage.name == name))
        return result.scalar_one_or_none()

    async def publish_version(
        self,
        package_name: str,
        version: str,
        manifest: Optional[dict[str, Any]] = None,
    ) -> PluginVersion:
        """
        Validate and record a new version of an existing package.

        Raises:
            ValidationFailed: If the version string is rejected
            NotFound: If the package does not exist
            ConflictingState: If the version conflicts with existing ones
        """
        validation = validate_version(version)
        if not validation.valid:
            raise ValidationFailed(validation.error, code=ErrorCode.INVALID_VERSION)

        package = await self.get_package(package_name)
        if package is None:
            raise NotFound(f"Package {package_name} not found")

        conflict = await self.check_version_conflict(package.id, version)
        if conflict is not None:
            raise ConflictingState(
                conflict.reason,
                code=ErrorCode.VERSION_CONFLICT,
                details=conflict.to_dict(),
            )

        row = PluginVersion(package_id=package.id, version=version, manifest=manifest or {})
        self.db.add(row)
        await self.db.flush()
        await self.db.refresh(row)

        logger.info("Version published", package_name=package_name, version=version)
        return row
