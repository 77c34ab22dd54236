"""Stack executor: converge one stack and return its outputs.

``stack_up`` always refreshes before converging so the engine plans against
real-world state. In dry-run mode it stops after the refresh and returns the
stack's current outputs without calling ``up``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Iterable, Optional, Protocol, TypeVar

from mesh_orchestrator.config_map import ConfigMap, layer_config, missing_keys
from mesh_orchestrator.engine import Engine, EngineResult, StackHandle
from mesh_orchestrator.errors import ConfigurationError, ConvergenceError, ImmutableFieldError
from mesh_orchestrator.models import RunStatus, StackDescriptor, StackUpResult
from mesh_orchestrator.shared_config import SharedConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Order and labels of the change summary printed after a successful update
SUMMARY_LABELS = (
    ("create", "created"),
    ("replace", "replaced"),
    ("update", "updated"),
    ("delete", "deleted"),
    ("same", "unchanged"),
)


class StackLedger(Protocol):
    """Receives stack lifecycle events, e.g. to persist them."""

    def stack_started(self, resource_name: str, descriptor: StackDescriptor) -> Any: ...

    def stack_finished(
        self,
        token: Any,
        status: RunStatus,
        outputs: Optional[ConfigMap] = None,
        error_message: Optional[str] = None,
    ) -> None: ...


class StackLogAdapter(logging.LoggerAdapter):
    """Prefix every line of a message with ``project/stack |``."""

    def process(self, msg, kwargs):
        prefix = self.extra["prefix"]
        lines = str(msg).split("\n")
        return "\n".join(f"{prefix} | {line.rstrip()}" for line in lines), kwargs


class StackCache:
    """Run-scoped cache of stack handles keyed by stack identity.

    Also tracks which identity each logical stack resource maps to. Identities
    are immutable: claiming a known resource name with a different
    ``(project, stack)`` pair raises ``ImmutableFieldError``.
    """

    def __init__(self, known_identities: Optional[dict[str, str]] = None):
        self._identities: dict[str, str] = dict(known_identities or {})
        self._handles: dict[StackDescriptor, StackHandle] = {}
        self._locks: dict[StackDescriptor, asyncio.Lock] = {}

    @property
    def identities(self) -> dict[str, str]:
        return dict(self._identities)

    def claim(self, resource_name: str, descriptor: StackDescriptor) -> None:
        current = self._identities.setdefault(resource_name, descriptor.identity)
        if current != descriptor.identity:
            raise ImmutableFieldError(resource_name, current, descriptor.identity)

    async def handle(self, engine: Engine, descriptor: StackDescriptor) -> StackHandle:
        lock = self._locks.setdefault(descriptor, asyncio.Lock())
        async with lock:
            if descriptor not in self._handles:
                self._handles[descriptor] = await engine.select_or_create_stack(descriptor)
            return self._handles[descriptor]


class StackExecutor:
    """Runs stack operations against the IaC engine.

    Args:
        engine: IaC engine boundary
        shared: Shared root config layered beneath every overlay
        cache: Run-scoped stack cache
        dry_run: Default dry-run mode for ``stack_up``
        timeout: Deadline in seconds for each engine call
        ledger: Optional sink for stack lifecycle events
    """

    def __init__(
        self,
        engine: Engine,
        shared: Optional[SharedConfig] = None,
        cache: Optional[StackCache] = None,
        dry_run: bool = True,
        timeout: Optional[float] = None,
        ledger: Optional[StackLedger] = None,
    ):
        self.engine = engine
        self.shared = shared
        self.cache = cache or StackCache()
        self.dry_run = dry_run
        self.timeout = timeout
        self.ledger = ledger
        self._prefix_width = 50

    def stack_logger(self, descriptor: StackDescriptor) -> StackLogAdapter:
        title = descriptor.identity
        self._prefix_width = max(self._prefix_width, len(title))
        return StackLogAdapter(logger, {"prefix": title.ljust(self._prefix_width)})

    async def stack_up(
        self,
        descriptor: StackDescriptor,
        config_overlay: ConfigMap,
        dry_run: Optional[bool] = None,
        *,
        resource_name: Optional[str] = None,
        required_config: Iterable[str] = (),
        output_namespace: Optional[str] = None,
    ) -> StackUpResult:
        """Converge ``descriptor`` with the shared config plus ``config_overlay``.

        Args:
            descriptor: Stack to converge
            config_overlay: Config layered over the shared root config
            dry_run: Refresh and read outputs only; defaults to the executor's mode
            resource_name: Logical name whose identity must stay stable
            required_config: Keys that must be present before anything runs
            output_namespace: Namespace consumers read the outputs under

        Returns:
            The stack's outputs

        Raises:
            ConfigurationError: A required key is missing
            ConvergenceError: The engine reported a non-succeeded result
            ImmutableFieldError: ``resource_name`` was bound to another identity
        """
        dry_run = self.dry_run if dry_run is None else dry_run
        namespace = output_namespace or descriptor.project_name
        log = self.stack_logger(descriptor)

        self.cache.claim(resource_name or descriptor.identity, descriptor)

        root = self.shared.snapshot() if self.shared is not None else {}
        config = layer_config(root, config_overlay)
        missing = missing_keys(config, required_config)
        if missing:
            raise ConfigurationError(
                f"{descriptor}: missing required config {', '.join(sorted(missing))}"
            )

        token = None
        if self.ledger is not None:
            token = self.ledger.stack_started(resource_name or descriptor.identity, descriptor)

        try:
            outputs = await self._converge(descriptor, config, dry_run, log)
        except BaseException as e:
            if self.ledger is not None:
                self.ledger.stack_finished(token, RunStatus.FAILED, error_message=str(e) or type(e).__name__)
            raise

        if self.ledger is not None:
            self.ledger.stack_finished(token, RunStatus.SUCCEEDED, outputs=outputs)

        return StackUpResult(descriptor=descriptor, outputs=outputs, output_namespace=namespace)

    async def _converge(
        self,
        descriptor: StackDescriptor,
        config: ConfigMap,
        dry_run: bool,
        log: StackLogAdapter,
    ) -> ConfigMap:
        handle = await self._deadline(descriptor, self.cache.handle(self.engine, descriptor))

        log.info(f"Spinning up stack {descriptor}")
        log.debug(f"Config keys: {', '.join(sorted(config))}")
        await self._deadline(descriptor, handle.set_all_config(config))

        log.info("Refreshing")
        await self._deadline(descriptor, handle.refresh(on_output=log.debug))

        if dry_run:
            log.info("Dry run, reading current outputs")
            return await self._deadline(descriptor, handle.outputs())

        log.info("Deploying")
        result = await self._deadline(descriptor, handle.up(on_output=log.debug))
        self._check_result(descriptor, result, log)

        log.info("Succeeded! Resource summary:")
        for line in format_change_summary(result.resource_changes):
            log.info(line)

        return dict(result.outputs)

    async def stack_preview(self, descriptor: StackDescriptor, config_overlay: ConfigMap) -> dict[str, int]:
        """Preview the changes ``stack_up`` would make, without mutating anything."""
        log = self.stack_logger(descriptor)
        handle = await self._deadline(descriptor, self.cache.handle(self.engine, descriptor))

        root = self.shared.snapshot() if self.shared is not None else {}
        await self._deadline(descriptor, handle.set_all_config(layer_config(root, config_overlay)))

        log.info("Previewing")
        changes = await self._deadline(descriptor, handle.preview(on_output=log.info))
        for line in format_change_summary(changes):
            log.info(line)
        return changes

    async def stack_destroy(self, descriptor: StackDescriptor) -> None:
        """Destroy every resource of ``descriptor``."""
        log = self.stack_logger(descriptor)
        handle = await self._deadline(descriptor, self.cache.handle(self.engine, descriptor))

        log.info("Destroying")
        result = await self._deadline(descriptor, handle.destroy(on_output=log.debug))
        self._check_result(descriptor, result, log)
        for line in format_change_summary(result.resource_changes):
            log.info(line)

    def _check_result(self, descriptor: StackDescriptor, result: EngineResult, log: StackLogAdapter) -> None:
        if result.succeeded:
            return
        if result.stdout:
            log.error(result.stdout)
        if result.stderr:
            log.error(result.stderr)
        raise ConvergenceError(
            descriptor.identity,
            result.message or f"result was '{result.result}'",
            stdout=result.stdout,
            stderr=result.stderr,
        )

    async def _deadline(self, descriptor: StackDescriptor, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` within the executor's deadline.

        Only the wait is abandoned when the deadline passes. A Pulumi call
        already running in a worker thread keeps running until the CLI exits,
        and the stack stays locked until then; a later run may need
        ``pulumi cancel`` before it can update that stack.
        """
        if self.timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ConvergenceError(
                descriptor.identity, f"engine call timed out after {self.timeout:g}s"
            ) from None


def format_change_summary(changes: dict[str, int]) -> list[str]:
    """Render resource change counts, e.g. ``"  3 created"``."""
    return [
        f"{changes[op]:>3} {label}"
        for op, label in SUMMARY_LABELS
        if changes.get(op)
    ]
