"""IaC engine boundary and its Pulumi Automation API implementation.

The orchestrator only talks to ``Engine`` and ``StackHandle``. The Pulumi
implementation runs the blocking Automation API calls in worker threads so
concurrent bring-ups keep making progress.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from pulumi import automation as auto

from mesh_orchestrator.config_map import ConfigEntry, ConfigMap, entry_from_value
from mesh_orchestrator.errors import ConvergenceError
from mesh_orchestrator.models import StackDescriptor

OutputCallback = Callable[[str], None]

# Project manifests an existing Pulumi project may carry
PROJECT_FILES = ("Pulumi.yaml", "Pulumi.yml", "Pulumi.json")


@dataclass
class EngineResult:
    """Result of an engine ``up``/``destroy`` operation."""

    result: str
    outputs: ConfigMap = field(default_factory=dict)
    stdout: str = ""
    stderr: str = ""
    message: str = ""
    resource_changes: dict[str, int] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result == "succeeded"


class StackHandle(Protocol):
    """A selected stack of the IaC engine."""

    descriptor: StackDescriptor

    async def get_all_config(self) -> ConfigMap: ...

    async def set_all_config(self, config: ConfigMap) -> None: ...

    async def set_config(self, key: str, entry: ConfigEntry) -> None: ...

    async def refresh(self, on_output: Optional[OutputCallback] = None) -> None: ...

    async def up(self, on_output: Optional[OutputCallback] = None) -> EngineResult: ...

    async def preview(self, on_output: Optional[OutputCallback] = None) -> dict[str, int]: ...

    async def destroy(self, on_output: Optional[OutputCallback] = None) -> EngineResult: ...

    async def outputs(self) -> ConfigMap: ...


class Engine(Protocol):
    """Creates or selects stacks by identity."""

    async def select_or_create_stack(self, descriptor: StackDescriptor) -> StackHandle: ...


# =============================================================================
# PULUMI AUTOMATION API
# =============================================================================


def _to_config_map(values: dict) -> ConfigMap:
    return {
        key: entry_from_value(item.value, bool(getattr(item, "secret", False)))
        for key, item in values.items()
        if item.value is not None
    }


def _to_automation_config(config: ConfigMap) -> dict[str, auto.ConfigValue]:
    return {
        key: auto.ConfigValue(value=entry.value, secret=entry.secret)
        for key, entry in config.items()
    }


def _error_details(error: auto.CommandError) -> tuple[str, str, str]:
    """Message, stdout and stderr of a failed Pulumi CLI command."""
    text = str(error).strip()
    message = text.splitlines()[0] if text else "command failed"
    stdout = getattr(error, "stdout", "") or ""
    stderr = getattr(error, "stderr", "") or text
    return message, stdout, stderr


def _failed_result(error: auto.CommandError) -> EngineResult:
    message, stdout, stderr = _error_details(error)
    return EngineResult(result="failed", stdout=stdout, stderr=stderr, message=message)


class PulumiStackHandle:
    """``StackHandle`` backed by a ``pulumi.automation.Stack``.

    ``up`` and ``destroy`` report CLI failures as a failed ``EngineResult``;
    every other operation raises ``ConvergenceError``.
    """

    def __init__(self, descriptor: StackDescriptor, stack: auto.Stack):
        self.descriptor = descriptor
        self._stack = stack

    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except auto.CommandError as e:
            message, stdout, stderr = _error_details(e)
            raise ConvergenceError(
                self.descriptor.identity, message, stdout=stdout, stderr=stderr
            ) from e

    async def get_all_config(self) -> ConfigMap:
        values = await self._call(self._stack.get_all_config)
        return _to_config_map(values)

    async def set_all_config(self, config: ConfigMap) -> None:
        await self._call(self._stack.set_all_config, _to_automation_config(config))

    async def set_config(self, key: str, entry: ConfigEntry) -> None:
        await self._call(
            self._stack.set_config,
            key,
            auto.ConfigValue(value=entry.value, secret=entry.secret),
        )

    async def refresh(self, on_output: Optional[OutputCallback] = None) -> None:
        await self._call(self._stack.refresh, on_output=on_output)

    async def up(self, on_output: Optional[OutputCallback] = None) -> EngineResult:
        try:
            result = await asyncio.to_thread(self._stack.up, on_output=on_output)
        except auto.CommandError as e:
            return _failed_result(e)

        summary = result.summary
        return EngineResult(
            result=summary.result,
            outputs=_to_config_map(result.outputs or {}),
            stdout=result.stdout,
            stderr=result.stderr,
            message=summary.message or "",
            resource_changes=dict(summary.resource_changes or {}),
        )

    async def preview(self, on_output: Optional[OutputCallback] = None) -> dict[str, int]:
        result = await self._call(self._stack.preview, on_output=on_output)
        return dict(result.change_summary or {})

    async def destroy(self, on_output: Optional[OutputCallback] = None) -> EngineResult:
        try:
            result = await asyncio.to_thread(self._stack.destroy, on_output=on_output)
        except auto.CommandError as e:
            return _failed_result(e)

        summary = result.summary
        return EngineResult(
            result=summary.result,
            stdout=result.stdout,
            stderr=result.stderr,
            message=summary.message or "",
            resource_changes=dict(summary.resource_changes or {}),
        )

    async def outputs(self) -> ConfigMap:
        values = await self._call(self._stack.outputs)
        return _to_config_map(values)


def has_project_file(work_dir: Path) -> bool:
    return any((work_dir / name).is_file() for name in PROJECT_FILES)


class PulumiEngine:
    """``Engine`` using local Pulumi workspaces.

    Projects that already ship a manifest keep it untouched; only a work dir
    without one gets a generated ``Pulumi.yaml`` for ``runtime``.
    """

    def __init__(self, runtime: str = "python"):
        self.runtime = runtime

    def workspace_options(self, descriptor: StackDescriptor) -> auto.LocalWorkspaceOptions:
        if has_project_file(Path(descriptor.work_dir)):
            return auto.LocalWorkspaceOptions()
        return auto.LocalWorkspaceOptions(
            project_settings=auto.ProjectSettings(
                name=descriptor.project_name,
                runtime=self.runtime,
            ),
        )

    async def select_or_create_stack(self, descriptor: StackDescriptor) -> PulumiStackHandle:
        try:
            stack = await asyncio.to_thread(
                auto.create_or_select_stack,
                stack_name=descriptor.stack_name,
                work_dir=str(descriptor.work_dir),
                opts=self.workspace_options(descriptor),
            )
        except auto.CommandError as e:
            message, stdout, stderr = _error_details(e)
            raise ConvergenceError(descriptor.identity, message, stdout=stdout, stderr=stderr) from e
        return PulumiStackHandle(descriptor, stack)
