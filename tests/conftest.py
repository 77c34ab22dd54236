"""Fakes for the IaC engine and provider CLIs."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

import pytest
import yaml

from mesh_orchestrator.config_map import ConfigEntry, ConfigMap
from mesh_orchestrator.engine import EngineResult
from mesh_orchestrator.errors import ConvergenceError
from mesh_orchestrator.kubeconfig import merge_kubeconfigs
from mesh_orchestrator.models import StackDescriptor
from mesh_orchestrator.shell import CommandResult

OutputSpec = Union[dict[str, Any], Callable[[StackDescriptor, ConfigMap], dict[str, Any]]]


def make_kubeconfig(context: str, server: str = "https://127.0.0.1:6443", current: bool = True) -> str:
    """Single-context kubeconfig whose cluster, user and context share a name."""
    document = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": context, "cluster": {"server": server}}],
        "users": [{"name": context, "user": {"token": f"token-{context}"}}],
        "contexts": [{"name": context, "context": {"cluster": context, "user": context}}],
    }
    if current:
        document["current-context"] = context
    return yaml.safe_dump(document, sort_keys=False)


def _entries(values: dict[str, Any]) -> ConfigMap:
    return {
        key: value if isinstance(value, ConfigEntry) else ConfigEntry(str(value))
        for key, value in values.items()
    }


class FakeStackHandle:
    """In-memory stack that records every call on its engine."""

    def __init__(self, engine: FakeEngine, descriptor: StackDescriptor):
        self.engine = engine
        self.descriptor = descriptor
        self.config: ConfigMap = dict(engine.initial_config.get(descriptor.identity, {}))
        self.current_outputs: ConfigMap = _entries(engine.deployed.get(descriptor.project_name, {}))

    def _record(self, op: str) -> None:
        self.engine.calls.append((self.descriptor.identity, op))

    async def get_all_config(self) -> ConfigMap:
        self._record("get_all_config")
        return dict(self.config)

    async def set_all_config(self, config: ConfigMap) -> None:
        self._record("set_all_config")
        self.config = dict(config)

    async def set_config(self, key: str, entry: ConfigEntry) -> None:
        self._record("set_config")
        self.config[key] = entry

    async def refresh(self, on_output=None) -> None:
        self._record("refresh")
        await asyncio.sleep(self.engine.delay)
        if self.descriptor.identity in self.engine.fail_refresh:
            raise ConvergenceError(
                self.descriptor.identity,
                "refresh failed",
                stdout="refreshing (dev)",
                stderr="error: could not read resource",
            )

    async def up(self, on_output=None) -> EngineResult:
        self._record("up")
        await asyncio.sleep(self.engine.delay)
        if self.engine.should_fail(self.descriptor):
            return EngineResult(
                result="failed",
                stdout="error: update failed",
                stderr="provider error",
                message="update failed",
            )

        produced = self.engine.outputs.get(self.descriptor.project_name, {})
        if callable(produced):
            produced = produced(self.descriptor, self.config)
        self.current_outputs = _entries(produced)
        return EngineResult(
            result="succeeded",
            outputs=dict(self.current_outputs),
            resource_changes={"create": 2, "same": 1},
        )

    async def preview(self, on_output=None) -> dict[str, int]:
        self._record("preview")
        return {"create": 1, "same": 4}

    async def destroy(self, on_output=None) -> EngineResult:
        self._record("destroy")
        if self.engine.should_fail(self.descriptor):
            return EngineResult(result="failed", message="destroy failed")
        self.current_outputs = {}
        return EngineResult(result="succeeded", resource_changes={"delete": 3})

    async def outputs(self) -> ConfigMap:
        self._record("outputs")
        return dict(self.current_outputs)


class FakeEngine:
    """Engine double.

    Args:
        outputs: Outputs produced by ``up``, per project name; a callable gets
            the descriptor and the stack's config
        fail: Project names or ``project/stack`` identities whose ``up`` fails
        fail_refresh: ``project/stack`` identities whose ``refresh`` raises
        deployed: Outputs already deployed before the test, per project name
        initial_config: Stack config present before the test, per identity
        delay: Seconds each refresh/up takes
    """

    def __init__(
        self,
        outputs: Optional[dict[str, OutputSpec]] = None,
        fail: Sequence[str] = (),
        fail_refresh: Sequence[str] = (),
        deployed: Optional[dict[str, dict[str, Any]]] = None,
        initial_config: Optional[dict[str, ConfigMap]] = None,
        delay: float = 0,
    ):
        self.outputs = outputs or {}
        self.fail = set(fail)
        self.fail_refresh = set(fail_refresh)
        self.deployed = deployed or {}
        self.initial_config = initial_config or {}
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.handles: dict[StackDescriptor, FakeStackHandle] = {}

    def should_fail(self, descriptor: StackDescriptor) -> bool:
        return descriptor.project_name in self.fail or descriptor.identity in self.fail

    async def select_or_create_stack(self, descriptor: StackDescriptor) -> FakeStackHandle:
        self.calls.append((descriptor.identity, "select"))
        if descriptor not in self.handles:
            self.handles[descriptor] = FakeStackHandle(self, descriptor)
        return self.handles[descriptor]

    def ops(self, identity: str) -> list[str]:
        return [op for ident, op in self.calls if ident == identity]

    def handle(self, identity: str) -> FakeStackHandle:
        return next(h for d, h in self.handles.items() if d.identity == identity)


class FakeCommandRunner:
    """Provider CLI double that writes a context into ``$KUBECONFIG``.

    Args:
        contexts: Maps a token of the command (e.g. the cluster name) to the
            context the command creates
        fail: Tokens whose commands exit non-zero
        delay: Seconds each command takes
    """

    def __init__(self, contexts: Optional[dict[str, str]] = None, fail: Sequence[str] = (), delay: float = 0):
        self.contexts = contexts or {}
        self.fail = set(fail)
        self.delay = delay
        self.commands: list[list[str]] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, args, env=None, timeout=None) -> CommandResult:
        args = list(args)
        self.commands.append(args)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.fail.intersection(args):
                return CommandResult(args, 1, "", "permission denied")

            context = next((self.contexts[a] for a in args if a in self.contexts), None)
            if context is not None:
                path = Path(env["KUBECONFIG"])
                existing = path.read_text() if path.exists() else ""
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(merge_kubeconfigs([existing, make_kubeconfig(context, current=False)]))
            return CommandResult(args, 0, "", "")
        finally:
            self.active -= 1


@pytest.fixture
def kubeconfig_path(tmp_path: Path) -> Path:
    return tmp_path / "kube" / "config"
