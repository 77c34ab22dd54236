"""Exception hierarchy for the cluster and mesh orchestrator."""

from typing import Optional


class OrchestratorError(Exception):
    """Base error for orchestration failures."""


class ConvergenceError(OrchestratorError):
    """The IaC engine reported a non-succeeded result for a stack.

    Args:
        stack: ``project/stack`` identifier of the failed stack
        message: Summary message reported by the engine
        stdout: Engine standard output, kept for diagnostics
        stderr: Engine standard error, kept for diagnostics
    """

    def __init__(
        self,
        stack: str,
        message: str,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(f"{stack}: {message}")
        self.stack = stack
        self.stdout = stdout
        self.stderr = stderr


class ConfigurationError(OrchestratorError):
    """A required configuration key or upstream output is missing."""


class CredentialFetchError(OrchestratorError):
    """Fetching cluster credentials from a provider CLI failed."""

    def __init__(self, cluster_name: str, message: str, stderr: str = ""):
        super().__init__(f"{cluster_name}: {message}")
        self.cluster_name = cluster_name
        self.stderr = stderr


class KubeconfigParseError(OrchestratorError):
    """A kubeconfig document could not be parsed."""


class ImmutableFieldError(OrchestratorError):
    """A stack resource attempted to change its (project, stack) identity."""

    def __init__(self, resource_name: str, old: str, new: str):
        super().__init__(
            f"{resource_name}: stack identity is immutable, "
            f"cannot modify from '{old}' to '{new}'"
        )
        self.resource_name = resource_name
        self.old = old
        self.new = new


class BringUpFailedError(OrchestratorError):
    """One or more cluster bring-ups or mesh stacks failed.

    Raised only after every concurrent bring-up has settled. ``successes``
    holds the clusters that did come up so callers can still report them.
    """

    def __init__(
        self,
        failures: dict[str, BaseException],
        successes: Optional[dict] = None,
    ):
        self.failures = failures
        self.successes = successes or {}
        lines = [f"{name}: {error}" for name, error in failures.items()]
        super().__init__(
            f"{len(failures)} failure(s) during orchestration:\n" + "\n".join(lines)
        )
