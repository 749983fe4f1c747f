from __future__ import annotations

import copy
import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from ctrcfg.src import selectors
from ctrcfg.src.kube import ResourceKind
from ctrcfg.src.metrics import METRICS

EventHandler = Callable[[dict[str, Any] | None, dict[str, Any]], None]

WATCH_TIMEOUT_SECONDS = 30


def object_name(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("name")


class Informer:
    """List-then-watch replica of one cluster-scoped resource kind.

    The informer keeps the latest copy of every object keyed by name and
    notifies an optional handler after each change with ``(old, new)``; for
    deletions ``new`` is the last known object and the handler is called as
    ``on_delete(obj)``.

    ``synced`` is set once the initial list has been stored.  The loop:

    1. Retries the initial list with jittered exponential backoff.
    2. Watches from the list's ``resourceVersion``.
    3. On ``410 Gone`` re-lists, replaying the difference as events.
    4. On ``401``/``403`` stops immediately; these are RBAC errors that a
       retry will not fix.
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_fn: Callable[..., dict[str, Any]],
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self._items: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._on_add: Callable[[dict[str, Any]], None] | None = None
        self._on_update: EventHandler | None = None
        self._on_delete: Callable[[dict[str, Any]], None] | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: Callable[[dict[str, Any]], None] | None = None,
        on_update: EventHandler | None = None,
        on_delete: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._on_add = on_add
        self._on_update = on_update
        self._on_delete = on_delete

    def get(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            obj = self._items.get(name)
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, selector: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        with self._lock:
            objs = list(self._items.values())
        if selector is not None:
            objs = [
                obj
                for obj in objs
                if selectors.matches(selector, (obj.get("metadata") or {}).get("labels"))
            ]
        return [copy.deepcopy(obj) for obj in sorted(objs, key=lambda o: object_name(o) or "")]

    def _dispatch(self, event_type: str, old: dict[str, Any] | None, new: dict[str, Any]) -> None:
        try:
            if event_type == "ADDED" and old is None and self._on_add is not None:
                self._on_add(copy.deepcopy(new))
            elif event_type in {"ADDED", "MODIFIED"} and old is not None and self._on_update:
                self._on_update(copy.deepcopy(old), copy.deepcopy(new))
            elif event_type == "DELETED" and self._on_delete is not None:
                self._on_delete(copy.deepcopy(new))
        except Exception:
            self.logger.exception(
                "Event handler for %s %s failed", self.kind.kind, object_name(new)
            )

    def handle_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """Apply one watch event to the store and notify the handler."""
        name = object_name(obj)
        if not name:
            return
        with self._lock:
            old = self._items.get(name)
            if event_type == "DELETED":
                self._items.pop(name, None)
            elif event_type in {"ADDED", "MODIFIED"}:
                self._items[name] = obj
            else:
                return
        if event_type == "DELETED":
            self._dispatch(event_type, old, old or obj)
        else:
            self._dispatch(event_type, old, obj)

    def replace(self, items: Iterable[dict[str, Any]], notify: bool) -> None:
        """Replace the store with a full listing.

        With ``notify`` the differences against the previous contents are
        replayed as ADDED/MODIFIED/DELETED events.
        """
        fresh = {name: obj for obj in items if (name := object_name(obj))}
        with self._lock:
            previous = self._items
            self._items = fresh
        if not notify:
            return
        for name, obj in fresh.items():
            old = previous.get(name)
            if old is None:
                self._dispatch("ADDED", None, obj)
            elif old != obj:
                self._dispatch("MODIFIED", old, obj)
        for name, old in previous.items():
            if name not in fresh:
                self._dispatch("DELETED", old, old)

    def request_stop(self) -> None:
        """Interrupt any open watch stream."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _list(self) -> tuple[list[dict[str, Any]], str | None]:
        listing = self.list_fn()
        resource_version = (listing.get("metadata") or {}).get("resourceVersion")
        return list(listing.get("items") or []), resource_version

    def run(self, stop: threading.Event) -> None:
        """List, then watch until *stop* is set."""
        resource_name = self.kind.plural
        resource_version: str | None = None
        backoff_seconds = 1
        while not stop.is_set():
            try:
                items, resource_version = self._list()
                self.replace(items, notify=True)
                self.synced.set()
                self.logger.info(
                    "Synced %d %s object(s) at resourceVersion %s",
                    len(items),
                    self.kind.kind,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        resource_name,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial list of %s failed", resource_name)
                METRICS.watch_errors_total.labels(resource=resource_name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", resource_name)
                METRICS.watch_errors_total.labels(resource=resource_name).inc()

            stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=resource_name).inc()
                watch_stream_count += 1
                for event in watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                ):
                    if stop.is_set():
                        break
                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue
                    metadata = obj.get("metadata") or {}
                    if metadata.get("resourceVersion"):
                        resource_version = metadata["resourceVersion"]
                    if event.get("type") == "ERROR":
                        if obj.get("code") == 410:
                            raise ApiException(status=410, reason="Gone")
                        continue
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", resource_name)
                    try:
                        items, resource_version = self._list()
                        self.replace(items, notify=True)
                    except ApiException:
                        self.logger.exception("Failed to re-list %s after 410", resource_name)
                        METRICS.watch_errors_total.labels(resource=resource_name).inc()
                        resource_version = None
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        resource_name,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=resource_name).inc()
                    return
                self.logger.exception("Kubernetes API watch error for %s", resource_name)
                METRICS.watch_errors_total.labels(resource=resource_name).inc()
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", resource_name)
                METRICS.watch_errors_total.labels(resource=resource_name).inc()
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class InformerCache:
    """Read-only, eventually consistent view over a set of informers."""

    def __init__(self, informers: Iterable[Informer]) -> None:
        self.informers = {informer.kind: informer for informer in informers}

    def informer(self, kind: ResourceKind) -> Informer:
        return self.informers[kind]

    def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        return self.informers[kind].get(name)

    def list(
        self, kind: ResourceKind, selector: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        return self.informers[kind].list(selector)

    def has_synced(self) -> bool:
        return all(informer.synced.is_set() for informer in self.informers.values())

    def wait_for_sync(
        self,
        stop: threading.Event,
        poll_seconds: float = 0.1,
        timeout: float | None = None,
    ) -> bool:
        """Block until every informer has synced.

        Returns False if *stop* fired or *timeout* seconds passed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not stop.is_set():
            if self.has_synced():
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            stop.wait(timeout=poll_seconds)
        return False
