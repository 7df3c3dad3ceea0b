from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from monitoring_operator.src.metrics import METRICS
from monitoring_operator.src.reconciler import Reconciler
from monitoring_operator.src.workqueue import RateLimitingQueue

LOGGER = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30
WATCH_TIMEOUT_SECONDS = 300


@dataclass(frozen=True)
class ObjectState:
    """The identity and versions of a watched object, for typed models and raw dicts alike."""

    namespace: str
    name: str
    resource_version: str
    generation: int | None

    @classmethod
    def of(cls, obj: Any) -> ObjectState:
        if isinstance(obj, Mapping):
            meta = obj.get("metadata") or {}
            return cls(
                namespace=str(meta.get("namespace") or ""),
                name=str(meta.get("name") or ""),
                resource_version=str(meta.get("resourceVersion") or ""),
                generation=meta.get("generation"),
            )
        meta = getattr(obj, "metadata", None)
        return cls(
            namespace=str(getattr(meta, "namespace", None) or ""),
            name=str(getattr(meta, "name", None) or ""),
            resource_version=str(getattr(meta, "resource_version", None) or ""),
            generation=getattr(meta, "generation", None),
        )


ObjectFilter = Callable[[ObjectState], bool]


def namespaced_name(namespace: str, name: str) -> ObjectFilter:
    def matches(state: ObjectState) -> bool:
        return state.namespace == namespace and state.name == name

    return matches


def secret_filter(namespace: str) -> ObjectFilter:
    """Match non-default secrets in *namespace*."""

    def matches(state: ObjectState) -> bool:
        return state.namespace == namespace and not state.name.startswith("default-token")

    return matches


def any_of(*filters: ObjectFilter) -> ObjectFilter:
    def matches(state: ObjectState) -> bool:
        return any(f(state) for f in filters)

    return matches


@dataclass(frozen=True)
class WatchSource:
    """One list-then-watch stream feeding a controller.

    ``list_fn`` is any list call of the kubernetes client that ``watch.Watch``
    can stream. Events pass only when every filter matches and the object's
    resourceVersion (and, with ``generation_changed``, its generation) differs
    from the last one seen.
    """

    name: str
    list_fn: Callable[..., Any]
    list_kwargs: Mapping[str, Any] = field(default_factory=dict)
    filters: Sequence[ObjectFilter] = ()
    generation_changed: bool = False


def _items(listing: Any) -> tuple[list[Any], str | None]:
    if isinstance(listing, Mapping):
        meta = listing.get("metadata") or {}
        return list(listing.get("items") or []), meta.get("resourceVersion")
    meta = getattr(listing, "metadata", None)
    return list(getattr(listing, "items", None) or []), getattr(meta, "resource_version", None)


class SourceCache:
    """Last observed versions per object, used by the change predicates."""

    def __init__(self, source: WatchSource) -> None:
        self.source = source
        self._seen: dict[tuple[str, str], ObjectState] = {}

    def accepts(self, state: ObjectState) -> bool:
        return all(f(state) for f in self.source.filters)

    def replace(self, objects: Sequence[Any]) -> bool:
        """Reset from a full listing; return whether anything relevant changed."""
        previous = self._seen
        current: dict[tuple[str, str], ObjectState] = {}
        for obj in objects:
            state = ObjectState.of(obj)
            if self.accepts(state):
                current[(state.namespace, state.name)] = state
        self._seen = current
        if previous.keys() != current.keys():
            return True
        return any(self._changed(previous[k], current[k]) for k in current)

    def _changed(self, before: ObjectState | None, after: ObjectState) -> bool:
        if before is None:
            return True
        if before.resource_version == after.resource_version:
            return False
        if self.source.generation_changed and before.generation == after.generation:
            return False
        return True

    def observe(self, event_type: str, obj: Any) -> bool:
        """Record a watch event and return whether it should trigger a reconcile."""
        state = ObjectState.of(obj)
        if not self.accepts(state):
            return False
        ident = (state.namespace, state.name)
        if event_type == "DELETED":
            self._seen.pop(ident, None)
            return True
        before = self._seen.get(ident)
        self._seen[ident] = state
        return self._changed(before, state)


class WatchController:
    """Runs one reconciler off a deduplicating queue fed by watch sources.

    Every accepted event enqueues the same constant key, so bursts of
    changes collapse into a single pending reconcile.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        key: Hashable,
        sources: Sequence[WatchSource],
        *,
        queue: RateLimitingQueue | None = None,
        watch_timeout_seconds: int = WATCH_TIMEOUT_SECONDS,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self.reconciler = reconciler
        self.name = reconciler.name
        self.key = key
        self.sources = list(sources)
        self.queue = queue or RateLimitingQueue(self.name)
        self.watch_timeout_seconds = watch_timeout_seconds
        self._watch_factory = watch_factory
        self.ready = threading.Event()
        self._synced: set[str] = set()
        self._lock = threading.Lock()
        self._active_watchers: dict[str, Any] = {}

    def enqueue(self) -> None:
        self.queue.add(self.key)

    def _mark_synced(self, source: WatchSource) -> None:
        with self._lock:
            self._synced.add(source.name)
            if len(self._synced) == len(self.sources):
                self.ready.set()

    def request_stop(self) -> None:
        """Stop active watch streams and wake the consumer."""
        self.queue.shutdown()
        with self._lock:
            watchers = list(self._active_watchers.values())
        for watcher in watchers:
            watcher.stop()

    # -----------------------------------------------------------------------
    # Consumer
    # -----------------------------------------------------------------------

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one key from the queue; return ``False`` when none was available."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        started = time.monotonic()
        METRICS.reconcile_total.labels(controller=self.name).inc()
        try:
            self.reconciler.reconcile(key)
        except Exception:
            LOGGER.exception("Reconcile %s failed for %s, requeuing", self.name, key)
            METRICS.reconcile_errors_total.labels(controller=self.name).inc()
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )
            self.queue.done(key)
        return True

    def run_consumer(self, stop: threading.Event) -> None:
        while not stop.is_set() and not self.queue.shutting_down:
            self.process_next(timeout=1.0)

    # -----------------------------------------------------------------------
    # Sources
    # -----------------------------------------------------------------------

    def _list(self, source: WatchSource, cache: SourceCache) -> tuple[bool, str | None]:
        listing = source.list_fn(**source.list_kwargs)
        items, resource_version = _items(listing)
        return cache.replace(items), resource_version

    def run_source(self, source: WatchSource, stop: threading.Event) -> None:
        """List-then-watch *source* until *stop* is set.

        Transient errors back off with jitter up to 30s. ``410 Gone`` re-lists
        and resumes from the fresh resourceVersion. ``401``/``403`` are RBAC or
        auth misconfiguration and end the loop.
        """
        cache = SourceCache(source)
        resource_version: str | None = None
        backoff_seconds = 1
        while not stop.is_set():
            try:
                _, resource_version = self._list(source, cache)
                LOGGER.info("Starting %s watch from resourceVersion %s", source.name, resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        source.name,
                        exc.status,
                    )
                    return
                LOGGER.exception("Initial list of %s failed", source.name)
                METRICS.watch_errors_total.labels(source=source.name).inc()
            except Exception:
                LOGGER.exception("Unexpected error listing %s", source.name)
                METRICS.watch_errors_total.labels(source=source.name).inc()
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

        if stop.is_set():
            return
        self._mark_synced(source)

        backoff_seconds = 1
        stream_count = 0
        while not stop.is_set():
            watcher = self._watch_factory()
            with self._lock:
                self._active_watchers[source.name] = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(source=source.name).inc()
                stream_count += 1
                stream = watcher.stream(
                    source.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **source.list_kwargs,
                )
                for event in stream:
                    if stop.is_set():
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if obj is None or event_type == "BOOKMARK":
                        continue
                    if event_type == "ERROR":
                        code = obj.get("code") if isinstance(obj, Mapping) else None
                        raise ApiException(status=code or 500, reason=str(obj))
                    state = ObjectState.of(obj)
                    if state.resource_version:
                        resource_version = state.resource_version
                    if cache.observe(event_type, obj):
                        LOGGER.debug(
                            "%s event %s %s/%s enqueues %s",
                            source.name,
                            event_type,
                            state.namespace,
                            state.name,
                            self.key,
                        )
                        self.enqueue()
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    LOGGER.warning("Watch on %s expired, re-listing", source.name)
                    try:
                        changed, resource_version = self._list(source, cache)
                        if changed:
                            self.enqueue()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            LOGGER.error(
                                "Kubernetes API access denied re-listing %s (status=%s). "
                                "Check operator RBAC and service account permissions.",
                                source.name,
                                relist_exc.status,
                            )
                            return
                        LOGGER.exception("Failed to re-list %s after 410", source.name)
                        METRICS.watch_errors_total.labels(source=source.name).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        source.name,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(source=source.name).inc()
                    return

                LOGGER.exception("Kubernetes API watch error on %s", source.name)
                METRICS.watch_errors_total.labels(source=source.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                LOGGER.exception("Unexpected watch error on %s", source.name)
                METRICS.watch_errors_total.labels(source=source.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._lock:
                    if self._active_watchers.get(source.name) is watcher:
                        del self._active_watchers[source.name]

    def run(self, stop: threading.Event) -> None:
        """Start source threads and consume the queue until *stop* is set."""
        threads = [
            threading.Thread(
                target=self.run_source,
                args=(source, stop),
                name=f"{self.name}-{source.name}",
                daemon=True,
            )
            for source in self.sources
        ]
        for thread in threads:
            thread.start()
        self.enqueue()
        try:
            self.run_consumer(stop)
        finally:
            self.request_stop()
            self.ready.clear()
