from __future__ import annotations

import base64
import logging
import random
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from monitoring_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class SecretNotFoundError(LookupError):
    """Raised when a watched secret has no cached value (not synced yet or deleted)."""


def default_retry_delay() -> float:
    """Seconds to wait before reopening a closed watch: 1 + uniform integer in [0, 30]."""
    return float(1 + random.randint(0, 30))  # noqa: S311


@dataclass(frozen=True)
class SecretRef:
    namespace: str
    name: str
    key: str

    @property
    def identity(self) -> tuple[str, str]:
        return (self.namespace, self.name)


class SecretWatcher:
    """A single long-lived watch on one secret with a cached value.

    ``ref_count`` is owned by :class:`SecretWatchProvider` and only changed
    under :attr:`lock`.  The watch thread reopens the stream after an
    unexpected close until :meth:`stop` is called, after which the cached value
    is cleared.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        name: str,
        *,
        on_change: Callable[[str, str], None] | None = None,
        retry_delay: Callable[[], float] = default_retry_delay,
        watch_factory: Callable[[], Any] = watch.Watch,
        request_timeout: float = 60.0,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.name = name
        self.on_change = on_change
        self.retry_delay = retry_delay
        self.watch_factory = watch_factory
        self.request_timeout = request_timeout

        self.lock = threading.Lock()
        self.ref_count = 1
        self._secret: Any | None = None
        self._closed = threading.Event()
        self._watch: Any | None = None
        self._thread: threading.Thread | None = None
        self.synced = threading.Event()

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"secret-watch-{self.namespace}-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop watching.  Interrupts a pending reopen delay immediately."""
        self._closed.set()
        with self.lock:
            active = self._watch
        if active is not None:
            active.stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    # -- cache -------------------------------------------------------------

    def get(self) -> Any | None:
        with self.lock:
            return self._secret

    def _set(self, secret: Any | None) -> None:
        with self.lock:
            self._secret = secret
        self.synced.set()
        if self.on_change is not None:
            self.on_change(self.namespace, self.name)

    def _refresh(self) -> None:
        try:
            secret = self.core_api.read_namespaced_secret(
                name=self.name,
                namespace=self.namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            secret = None
        self._set(secret)

    def handle_event(self, event: dict[str, Any]) -> None:
        event_type = str(event.get("type", ""))
        obj = event.get("object")
        if event_type in ("ADDED", "MODIFIED"):
            self._set(obj)
        elif event_type == "DELETED":
            self._set(None)
        elif event_type == "ERROR":
            raise ApiException(status=getattr(obj, "code", 500), reason=str(getattr(obj, "message", obj)))

    # -- watch loop --------------------------------------------------------

    def _watch_once(self) -> None:
        active = self.watch_factory()
        with self.lock:
            if self._closed.is_set():
                return
            self._watch = active
        try:
            self._refresh()
            for event in active.stream(
                self.core_api.list_namespaced_secret,
                namespace=self.namespace,
                field_selector=f"metadata.name={self.name}",
            ):
                if self._closed.is_set():
                    break
                self.handle_event(event)
        finally:
            active.stop()
            with self.lock:
                if self._watch is active:
                    self._watch = None

    def _run(self) -> None:
        attempts = 0
        while not self._closed.is_set():
            if attempts:
                METRICS.secret_watch_restarts_total.inc()
            attempts += 1
            try:
                self._watch_once()
            except ApiException as exc:
                LOGGER.warning(
                    "Watch on secret %s/%s failed (status=%s)", self.namespace, self.name, exc.status
                )
            except Exception:
                LOGGER.exception("Unexpected error watching secret %s/%s", self.namespace, self.name)

            if self._closed.is_set():
                break
            delay = self.retry_delay()
            LOGGER.info(
                "Watch on secret %s/%s closed, reopening in %.0fs", self.namespace, self.name, delay
            )
            if self._closed.wait(timeout=delay):
                break

        with self.lock:
            self._secret = None
        LOGGER.debug("Stopped watching secret %s/%s", self.namespace, self.name)


class SecretHandle:
    """Lazy reader for one key of a watched secret."""

    def __init__(self, watcher: SecretWatcher, key: str) -> None:
        self._watcher = watcher
        self.key = key

    @property
    def watcher(self) -> SecretWatcher:
        return self._watcher

    def fetch(self) -> bytes:
        secret = self._watcher.get()
        if secret is None:
            raise SecretNotFoundError(f"secret {self._watcher.namespace}/{self._watcher.name} not found")
        data = getattr(secret, "data", None) or {}
        if self.key in data:
            return base64.b64decode(data[self.key])
        string_data = getattr(secret, "string_data", None) or {}
        if self.key in string_data:
            return string_data[self.key].encode()
        raise SecretNotFoundError(
            f"key {self.key!r} not found in secret {self._watcher.namespace}/{self._watcher.name}"
        )


class SecretWatchProvider:
    """Hands out secret handles backed by one refcounted watch per secret.

    The watcher map lock is only held while the map itself changes; each
    watcher's own lock guards its refcount and cached value.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        *,
        on_change: Callable[[str, str], None] | None = None,
        retry_delay: Callable[[], float] = default_retry_delay,
        watch_factory: Callable[[], Any] = watch.Watch,
        request_timeout: float = 60.0,
    ) -> None:
        self.core_api = core_api
        self.on_change = on_change
        self.retry_delay = retry_delay
        self.watch_factory = watch_factory
        self.request_timeout = request_timeout
        self._lock = threading.Lock()
        self._watchers: dict[tuple[str, str], SecretWatcher] = {}

    def watcher(self, namespace: str, name: str) -> SecretWatcher | None:
        with self._lock:
            return self._watchers.get((namespace, name))

    def add(self, ref: SecretRef) -> SecretHandle:
        with self._lock:
            existing = self._watchers.get(ref.identity)
            if existing is not None:
                with existing.lock:
                    existing.ref_count += 1
                return SecretHandle(existing, ref.key)

            created = SecretWatcher(
                self.core_api,
                ref.namespace,
                ref.name,
                on_change=self.on_change,
                retry_delay=self.retry_delay,
                watch_factory=self.watch_factory,
                request_timeout=self.request_timeout,
            )
            self._watchers[ref.identity] = created
        created.start()
        LOGGER.info("Started watching secret %s/%s", ref.namespace, ref.name)
        return SecretHandle(created, ref.key)

    def update(self, before: SecretRef, after: SecretRef) -> SecretHandle:
        if before.identity == after.identity:
            existing = self.watcher(*after.identity)
            if existing is None:
                raise SecretNotFoundError(f"secret {after.namespace}/{after.name} is not watched")
            return SecretHandle(existing, after.key)
        self.remove(before)
        return self.add(after)

    def remove(self, ref: SecretRef) -> None:
        with self._lock:
            existing = self._watchers.get(ref.identity)
            if existing is None:
                return
            with existing.lock:
                existing.ref_count -= 1
                remaining = existing.ref_count
            if remaining > 0:
                return
            del self._watchers[ref.identity]
        existing.stop()
        LOGGER.info("Stopped watching secret %s/%s", ref.namespace, ref.name)

    def close(self) -> None:
        with self._lock:
            watchers = list(self._watchers.values())
            self._watchers.clear()
        for existing in watchers:
            existing.stop()


@dataclass(frozen=True)
class SecretConfig:
    """A named secret reference from the applied configuration."""

    name: str
    ref: SecretRef


class SecretManager:
    """Applies the set of referenced secrets to a :class:`SecretWatchProvider`.

    Each :meth:`apply_config` diffs against the previous application so that
    unchanged references keep their watch.
    """

    def __init__(self, provider: SecretWatchProvider) -> None:
        self.provider = provider
        self._lock = threading.Lock()
        self._configs: dict[str, SecretConfig] = {}
        self._handles: dict[str, SecretHandle] = {}

    def apply_config(self, configs: Sequence[SecretConfig]) -> list[str]:
        """Apply *configs* and return error messages for rejected entries.

        Configs sharing a name are all rejected; the rest are applied.
        """
        counts: dict[str, int] = {}
        for cfg in configs:
            counts[cfg.name] = counts.get(cfg.name, 0) + 1
        errors = [f"duplicate secret name {name!r}" for name, count in sorted(counts.items()) if count > 1]
        wanted = {cfg.name: cfg for cfg in configs if counts[cfg.name] == 1}

        with self._lock:
            for name in sorted(set(self._configs) - set(wanted)):
                self.provider.remove(self._configs.pop(name).ref)
                self._handles.pop(name, None)
            for name in sorted(wanted):
                cfg = wanted[name]
                previous = self._configs.get(name)
                if previous == cfg:
                    continue
                if previous is None:
                    handle = self.provider.add(cfg.ref)
                else:
                    handle = self.provider.update(previous.ref, cfg.ref)
                self._configs[name] = cfg
                self._handles[name] = handle

            METRICS.secrets_total.set(len(self._configs))
        METRICS.failed_secret_configs.set(len(configs) - len(wanted))
        for message in errors:
            LOGGER.error("Rejected secret config: %s", message)
        return errors

    def fetch(self, name: str) -> bytes:
        with self._lock:
            handle = self._handles.get(name)
        if handle is None:
            raise SecretNotFoundError(f"secret config {name!r} not found")
        return handle.fetch()

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._configs)

    def close(self) -> None:
        with self._lock:
            self._configs.clear()
            self._handles.clear()
            METRICS.secrets_total.set(0)
        self.provider.close()
