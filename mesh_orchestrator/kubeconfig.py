"""Local kubeconfig handling.

Every read or write of the local kubeconfig file happens inside a
``KubeCriticalSection``. Concurrent bring-ups append contexts to the same
file; without the section one write can clobber another.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

import yaml

from mesh_orchestrator.errors import (
    ConfigurationError,
    CredentialFetchError,
    KubeconfigParseError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

NAMED_SECTIONS = ("clusters", "contexts", "users")


class KubeCriticalSection:
    """Mutex with a single permit guarding the local kubeconfig file.

    Use ``async with section:`` around a block, or ``await section.run(fn)``
    for a coroutine function. Not reentrant.
    """

    def __init__(self):
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "KubeCriticalSection":
        await self._lock.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._lock.release()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self:
            return await fn()

    def locked(self) -> bool:
        return self._lock.locked()


# =============================================================================
# PURE KUBECONFIG OPERATIONS
# =============================================================================


def empty_kubeconfig() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "preferences": {},
        "clusters": [],
        "contexts": [],
        "users": [],
        "current-context": "",
    }


def parse_kubeconfig(text: str) -> dict[str, Any]:
    """Parse a kubeconfig YAML/JSON document into a normalised dict.

    Raises:
        KubeconfigParseError: The document is not a kubeconfig mapping
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise KubeconfigParseError(f"Invalid kubeconfig YAML: {e}") from e

    if data is None:
        return empty_kubeconfig()
    if not isinstance(data, dict):
        raise KubeconfigParseError("Kubeconfig must be a mapping")

    config = empty_kubeconfig()
    config.update({k: v for k, v in data.items() if k not in NAMED_SECTIONS})
    for section in NAMED_SECTIONS:
        items = data.get(section) or []
        if not isinstance(items, list):
            raise KubeconfigParseError(f"Kubeconfig '{section}' must be a list")
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                raise KubeconfigParseError(f"Every entry of '{section}' needs a name")
        config[section] = list(items)
    config["current-context"] = config.get("current-context") or ""
    return config


def dump_kubeconfig(config: dict[str, Any]) -> str:
    return yaml.safe_dump(config, default_flow_style=False, sort_keys=False)


def _merge_named(base: list[dict], overlay: list[dict]) -> list[dict]:
    merged = {item["name"]: item for item in base}
    for item in overlay:
        merged[item["name"]] = item
    return list(merged.values())


def merge_kubeconfig_documents(configs: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Union clusters, contexts and users by name; later documents win.

    Every other top-level key (``current-context``, ``preferences``,
    ``extensions``) is taken from the first document that sets it, so merging
    new clusters into an existing file keeps the user's context and settings.
    """
    merged = empty_kubeconfig()
    carried: set[str] = set()
    for config in configs:
        for section in NAMED_SECTIONS:
            merged[section] = _merge_named(merged[section], config.get(section, []))
        for key, value in config.items():
            if key in NAMED_SECTIONS or key in carried or value in (None, "", {}, []):
                continue
            merged[key] = value
            carried.add(key)
    return merged


def merge_kubeconfigs(configs: Iterable[str]) -> str:
    """Merge kubeconfig documents into one YAML document.

    All inputs are parsed before anything is merged, so a malformed document
    aborts the whole merge.
    """
    documents = [parse_kubeconfig(text) for text in configs]
    return dump_kubeconfig(merge_kubeconfig_documents(documents))


def rewrite_kubeconfig(text: str, context_name: str) -> str:
    """Rename the single cluster/user/context triple of ``text`` to ``context_name``.

    Provider-issued kubeconfigs use generated names; renaming keeps every
    cluster's context name predictable and unique.
    """
    config = parse_kubeconfig(text)
    if len(config["clusters"]) != 1 or len(config["users"]) != 1:
        raise KubeconfigParseError(
            "Expected exactly one cluster and one user in provider kubeconfig"
        )

    cluster = dict(config["clusters"][0], name=context_name)
    user = dict(config["users"][0], name=context_name)
    namespace = None
    if config["contexts"]:
        namespace = (config["contexts"][0].get("context") or {}).get("namespace")

    context: dict[str, Any] = {"cluster": context_name, "user": context_name}
    if namespace:
        context["namespace"] = namespace

    config.update(
        {
            "clusters": [cluster],
            "users": [user],
            "contexts": [{"name": context_name, "context": context}],
            "current-context": context_name,
        }
    )
    return dump_kubeconfig(config)


def extract_context(config: dict[str, Any], context_name: str) -> Optional[dict[str, Any]]:
    """Return a minified kubeconfig holding only ``context_name`` and its refs."""
    context = next((c for c in config["contexts"] if c["name"] == context_name), None)
    if context is None:
        return None

    refs = context.get("context") or {}
    result = empty_kubeconfig()
    result["contexts"] = [context]
    result["clusters"] = [c for c in config["clusters"] if c["name"] == refs.get("cluster")]
    result["users"] = [u for u in config["users"] if u["name"] == refs.get("user")]
    result["current-context"] = context_name
    return result


# =============================================================================
# LOCAL KUBECONFIG FILE
# =============================================================================


class KubeconfigStore:
    """The user's local kubeconfig file.

    Every method must be called while holding ``critical_section``;
    calling one outside it raises ``RuntimeError``.
    """

    def __init__(self, path: Path, critical_section: KubeCriticalSection):
        self.path = Path(path).expanduser()
        self.critical_section = critical_section

    def _require_section(self) -> None:
        if not self.critical_section.locked():
            raise RuntimeError(f"{self.path} accessed outside the kube critical section")

    def read(self) -> dict[str, Any]:
        self._require_section()
        if not self.path.exists():
            return empty_kubeconfig()
        return parse_kubeconfig(self.path.read_text())

    def has_context(self, context_name: str) -> bool:
        return any(c["name"] == context_name for c in self.read()["contexts"])

    def export_context(self, context_name: str) -> Optional[str]:
        """Minified kubeconfig for one context, or None when it is absent."""
        config = extract_context(self.read(), context_name)
        return dump_kubeconfig(config) if config is not None else None

    def load(self, kubeconfig: str) -> None:
        """Merge ``kubeconfig`` into the file, preserving every existing entry."""
        merged = merge_kubeconfig_documents([self.read(), parse_kubeconfig(kubeconfig)])
        self.write(dump_kubeconfig(merged))

    def write(self, text: str) -> None:
        """Atomically replace the file: write a temp file, then rename over it."""
        self._require_section()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".kubeconfig-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


# =============================================================================
# REGISTRATION
# =============================================================================


class KubeconfigRegistrar:
    """Registers cluster contexts in the local kubeconfig, once per context.

    Registration runs entirely inside the critical section: it checks whether
    the context already exists and only fetches credentials when it does not.
    Each context name may be registered by one cluster per run.
    """

    def __init__(self, store: KubeconfigStore, run_command, command_timeout: Optional[float] = None):
        self.store = store
        self.run_command = run_command
        self.command_timeout = command_timeout
        self._owners: dict[str, str] = {}

    @property
    def critical_section(self) -> KubeCriticalSection:
        return self.store.critical_section

    async def register(
        self,
        owner: str,
        context_name: str,
        command: Optional[list[str]] = None,
        kubeconfig: Optional[str] = None,
    ) -> str:
        """Ensure ``context_name`` exists locally and return it as a minified kubeconfig.

        Args:
            owner: Cluster registering the context
            context_name: Context that must exist afterwards
            command: CLI that writes the context into ``$KUBECONFIG``
            kubeconfig: Kubeconfig text to merge, when no CLI is involved

        Raises:
            ConfigurationError: Another cluster registered the same context
            CredentialFetchError: Fetching or loading credentials failed
        """
        if command is None and kubeconfig is None:
            raise ValueError("register() needs a command or a kubeconfig")

        async with self.critical_section:
            current = self._owners.setdefault(context_name, owner)
            if current != owner:
                raise ConfigurationError(
                    f"Context '{context_name}' is already used by cluster '{current}'"
                )

            if self.store.has_context(context_name):
                logger.info(f"Context {context_name} already registered, skipping credential fetch")
            elif command is not None:
                logger.info(f"Getting credentials for cluster {owner}")
                result = await self.run_command(
                    command,
                    env={"KUBECONFIG": str(self.store.path)},
                    timeout=self.command_timeout,
                )
                if not result.success:
                    raise CredentialFetchError(
                        owner,
                        f"'{' '.join(command)}' exited with {result.returncode}",
                        stderr=result.stderr,
                    )
            else:
                try:
                    self.store.load(kubeconfig)
                except KubeconfigParseError as e:
                    raise CredentialFetchError(owner, f"invalid kubeconfig: {e}") from e

            exported = self.store.export_context(context_name)
            if exported is None:
                raise CredentialFetchError(
                    owner, f"context '{context_name}' missing after credential fetch"
                )
            return exported
