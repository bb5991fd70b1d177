"""
Hook Executor - Plugin lifecycle scripts.

Runs the postInstall / preUpdate / postUpdate / preUninstall commands a
plugin declares in its manifest. Each hook is a single command spawned
without a shell, under a timeout, with its output captured.
"""

import asyncio
import enum
import json
import os
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

from naap_runtime.core.config import settings

logger = structlog.get_logger()


CHAINING_TOKENS = ("&&", "||", ";")

DANGEROUS_PATTERNS = (
    "rm -rf /",
    ":(){ :|:& };:",
)


class HookType(str, enum.Enum):
    POST_INSTALL = "postInstall"
    PRE_UPDATE = "preUpdate"
    POST_UPDATE = "postUpdate"
    PRE_UNINSTALL = "preUninstall"


class LifecycleAction(str, enum.Enum):
    INSTALL = "install"
    UPDATE = "update"
    UNINSTALL = "uninstall"


@dataclass
class HookContext:
    """Identity of the plugin and the lifecycle action being performed."""
    plugin_name: str
    version: str
    action: LifecycleAction
    environment: dict[str, str] = field(default_factory=dict)


@dataclass
class HookConfig:
    timeout_seconds: float = field(default_factory=lambda: settings.HOOK_TIMEOUT_SECONDS)
    kill_grace_seconds: float = field(default_factory=lambda: settings.HOOK_KILL_GRACE_SECONDS)
    working_dir: Optional[str] = None
    continue_on_error: bool = False


@dataclass
class HookExecutionResult:
    success: bool
    duration_ms: int
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "exitCode": self.exit_code,
            "duration": self.duration_ms,
            "timedOut": self.timed_out,
        }


def has_chained_commands(script: str) -> bool:
    return any(token in script for token in CHAINING_TOKENS)


def validate_hooks(hooks: dict[str, Any]) -> list[str]:
    """
    Validate hook declarations from a plugin manifest.

    Returns:
        List of validation errors, empty if valid
    """
    errors: list[str] = []
    allowed = {h.value for h in HookType}

    for key, script in hooks.items():
        if key not in allowed:
            errors.append(f"Unknown hook type: {key}")
            continue

        if not isinstance(script, str):
            errors.append(f"Hook {key} must be a string command")
            continue

        if not script.strip():
            errors.append(f"Hook {key} cannot be empty")
            continue

        if has_chained_commands(script):
            errors.append(f"Hook {key} contains chained commands which are not allowed")

        if any(pattern in script for pattern in DANGEROUS_PATTERNS):
            errors.append(f"Hook {key} contains dangerous commands")

    return errors


def load_hooks_from_manifest(manifest_path: str | Path) -> Optional[dict[str, str]]:
    """
    Load and validate the `hooks` section of a manifest file.

    Returns None when the file is unreadable, has no hooks, or the hooks
    fail validation.
    """
    try:
        manifest = json.loads(Path(manifest_path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error("Failed to load hook manifest", path=str(manifest_path), error=str(e))
        return None

    hooks = manifest.get("hooks") if isinstance(manifest, dict) else None
    if not isinstance(hooks, dict):
        return None

    errors = validate_hooks(hooks)
    if errors:
        logger.error("Hook manifest is invalid", path=str(manifest_path), errors=errors)
        return None

    return hooks


class HookExecutor:
    """
    Lifecycle hook runner.

    Hooks are never retried automatically; a failed hook is reported in
    the result and the caller decides whether the lifecycle operation
    continues.
    """

    def __init__(self, config: Optional[HookConfig] = None):
        self.config = config or HookConfig()

    async def execute_hook(
        self,
        script: str,
        context: HookContext,
        config: Optional[HookConfig] = None,
    ) -> HookExecutionResult:
        """
        Execute one hook command.

        Never raises: spawn failures, timeouts and non-zero exits all come
        back as a failed result. With continue_on_error the result is
        marked successful but still carries the error.
        """
        config = config or self.config
        started = time.monotonic()

        if not isinstance(script, str) or not script.strip():
            return HookExecutionResult(
                success=False,
                error="Invalid hook script provided",
                duration_ms=_elapsed_ms(started),
            )

        script = script.strip()
        if has_chained_commands(script):
            logger.warning("Rejected chained hook command", plugin_name=context.plugin_name, script=script)
            return HookExecutionResult(
                success=False,
                error="Hook scripts cannot contain chained commands (&&, ||, ;)",
                duration_ms=_elapsed_ms(started),
            )

        try:
            argv = shlex.split(script)
        except ValueError as e:
            return HookExecutionResult(
                success=False,
                error=f"Invalid hook script: {e}",
                duration_ms=_elapsed_ms(started),
            )

        env = {
            **os.environ,
            **context.environment,
            "PLUGIN_NAME": context.plugin_name,
            "PLUGIN_VERSION": context.version,
            "LIFECYCLE_ACTION": context.action.value,
        }

        logger.info(
            "Executing lifecycle hook",
            plugin_name=context.plugin_name,
            version=context.version,
            action=context.action.value,
            command=script,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=config.working_dir or os.getcwd(),
                env=env,
            )
        except OSError as e:
            logger.error("Failed to start lifecycle hook", plugin_name=context.plugin_name, error=str(e))
            return HookExecutionResult(
                success=config.continue_on_error,
                error=str(e),
                duration_ms=_elapsed_ms(started),
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            stdout = await self._terminate(proc, config.kill_grace_seconds)
            logger.error(
                "Lifecycle hook timed out",
                plugin_name=context.plugin_name,
                timeout_seconds=config.timeout_seconds,
            )
            return HookExecutionResult(
                success=config.continue_on_error,
                error=f"Hook execution timed out after {config.timeout_seconds}s",
                output=stdout,
                exit_code=-1,
                timed_out=True,
                duration_ms=_elapsed_ms(started),
            )

        output = stdout.decode(errors="replace")
        error_output = stderr.decode(errors="replace")
        exit_code = proc.returncode
        duration_ms = _elapsed_ms(started)

        if exit_code == 0:
            logger.info("Lifecycle hook completed", plugin_name=context.plugin_name, duration_ms=duration_ms)
            return HookExecutionResult(
                success=True,
                output=output,
                exit_code=0,
                duration_ms=duration_ms,
            )

        logger.error(
            "Lifecycle hook failed",
            plugin_name=context.plugin_name,
            exit_code=exit_code,
            stderr=error_output.strip()[-500:],
        )
        return HookExecutionResult(
            success=config.continue_on_error,
            output=output,
            error=error_output or f"Exit code: {exit_code}",
            exit_code=exit_code,
            duration_ms=duration_ms,
        )

    async def execute_hooks_sequentially(
        self,
        scripts: list[str],
        context: HookContext,
        config: Optional[HookConfig] = None,
    ) -> list[HookExecutionResult]:
        """Run hooks in order, stopping at the first failure unless continue_on_error."""
        config = config or self.config
        results: list[HookExecutionResult] = []

        for script in scripts:
            result = await self.execute_hook(script, context, config)
            results.append(result)

            if not result.success and not config.continue_on_error:
                logger.error("Lifecycle hook sequence stopped", plugin_name=context.plugin_name, ran=len(results))
                break

        return results

    async def execute_lifecycle_hook(
        self,
        hooks: Optional[dict[str, str]],
        hook_type: HookType,
        context: HookContext,
        config: Optional[HookConfig] = None,
    ) -> Optional[HookExecutionResult]:
        """Run the declared hook of the given type, or return None if not declared."""
        script = (hooks or {}).get(hook_type.value)
        if not script:
            logger.debug("Lifecycle hook not declared", plugin_name=context.plugin_name, hook=hook_type.value)
            return None

        return await self.execute_hook(script, context, config)

    async def _terminate(self, proc: asyncio.subprocess.Process, grace_seconds: float) -> str:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            stdout, _ = await proc.communicate()

        return (stdout or b"").decode(errors="replace")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
