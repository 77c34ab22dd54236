"""Fan-out/fan-in over named coroutines that never fails fast."""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Generic, Mapping, TypeVar

from mesh_orchestrator.errors import BringUpFailedError

T = TypeVar("T")


@dataclass
class SettledResults(Generic[T]):
    """Outcome of ``settle_all``: every name lands in exactly one of the two maps."""

    successes: dict[str, T] = field(default_factory=dict)
    failures: dict[str, BaseException] = field(default_factory=dict)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise BringUpFailedError(self.failures, self.successes)


async def settle_all(awaitables: Mapping[str, Awaitable[T]]) -> SettledResults[T]:
    """Run every awaitable concurrently and wait for all of them to settle.

    A failure in one never cancels the others. Cancelling the caller cancels
    every child that is still running, then re-raises.

    Args:
        awaitables: Awaitables keyed by a name used in the result maps

    Returns:
        Successes and failures by name
    """
    settled: SettledResults[T] = SettledResults()
    if not awaitables:
        return settled

    tasks = {name: asyncio.ensure_future(aw) for name, aw in awaitables.items()}
    try:
        await asyncio.wait(tasks.values())
    except asyncio.CancelledError:
        for task in tasks.values():
            task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)
        raise

    for name, task in tasks.items():
        if task.cancelled():
            settled.failures[name] = asyncio.CancelledError(f"{name} was cancelled")
        elif task.exception() is not None:
            settled.failures[name] = task.exception()
        else:
            settled.successes[name] = task.result()
    return settled
