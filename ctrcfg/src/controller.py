from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes.client import CoreV1Api, CustomObjectsApi

from ctrcfg.src.cache import Informer, InformerCache
from ctrcfg.src.config import Settings
from ctrcfg.src.finalizers import cascade_delete
from ctrcfg.src.image_policy import IMAGE_CONFIG_KEY, ImagePolicySynchronizer
from ctrcfg.src.kube import (
    CLUSTER_VERSION,
    CONTAINER_RUNTIME_CONFIG,
    CONTROLLER_CONFIG,
    IMAGE_CONFIG,
    IMAGE_CONTENT_SOURCE_POLICY,
    MACHINE_CONFIG_POOL,
    ClusterStore,
    ResourceKind,
)
from ctrcfg.src.objects import finalizers_of, is_being_deleted, name_of
from ctrcfg.src.render import TemplateRenderer
from ctrcfg.src.runtime_config import SENTINEL_KEY, RuntimeConfigSynchronizer
from ctrcfg.src.workqueue import RateLimitingQueue, handle_error, run_worker

RUNTIME_CONFIG_QUEUE = "containerruntimeconfig"
IMAGE_QUEUE = "image"

WATCHED_KINDS: tuple[ResourceKind, ...] = (
    CONTAINER_RUNTIME_CONFIG,
    MACHINE_CONFIG_POOL,
    CONTROLLER_CONFIG,
    IMAGE_CONFIG,
    IMAGE_CONTENT_SOURCE_POLICY,
    CLUSTER_VERSION,
)

SYNC_WAIT_SECONDS = 1.0
THREAD_JOIN_TIMEOUT_SECONDS = 10.0


def _needs_resync(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """Spec changes and deletion progress are the only updates worth a sync."""
    if old.get("spec") != new.get("spec"):
        return True
    old_meta = old.get("metadata") or {}
    new_meta = new.get("metadata") or {}
    if old_meta.get("deletionTimestamp") != new_meta.get("deletionTimestamp"):
        return True
    return is_being_deleted(new) and finalizers_of(old) != finalizers_of(new)


class ContainerRuntimeConfigController:
    """Runs the informers, dispatch queues and workers of both synchronizers.

    ``ready`` is set once every informer has completed its initial list and
    the workers are draining the queues; it is cleared again on shutdown.
    The startup sentinel is queued every time the queues are (re)built so
    each leadership term starts with one seccomp-default pass.
    """

    def __init__(
        self,
        store: ClusterStore,
        settings: Settings,
        renderer: TemplateRenderer | None = None,
        informers: Iterable[Informer] | None = None,
        error_sink: Callable[[BaseException], None] = handle_error,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.error_sink = error_sink
        self.renderer = renderer or TemplateRenderer(settings.templates_dir)
        if informers is None:
            informers = [
                Informer(kind, store.list_function(kind), self.logger) for kind in WATCHED_KINDS
            ]
        self.cache = InformerCache(informers)
        self.runtime_configs = RuntimeConfigSynchronizer(store, self.cache, self.renderer, settings)
        self.image_policy = ImagePolicySynchronizer(store, self.cache, self.renderer, settings)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._reset_queues()
        self._register_handlers()

    def _reset_queues(self) -> None:
        self.runtime_config_queue = RateLimitingQueue(RUNTIME_CONFIG_QUEUE)
        self.image_queue = RateLimitingQueue(IMAGE_QUEUE)
        self.runtime_config_queue.add(SENTINEL_KEY)

    def _register_handlers(self) -> None:
        self.cache.informer(CONTAINER_RUNTIME_CONFIG).add_event_handler(
            on_add=self._runtime_config_added,
            on_update=self._runtime_config_updated,
            on_delete=self._runtime_config_deleted,
        )
        for kind in (IMAGE_CONFIG, IMAGE_CONTENT_SOURCE_POLICY):
            self.cache.informer(kind).add_event_handler(
                on_add=self._image_changed,
                on_update=lambda _old, new: self._image_changed(new),
                on_delete=self._image_changed,
            )

    def _runtime_config_added(self, cfg: dict[str, Any]) -> None:
        self.logger.debug("Add ContainerRuntimeConfig %s", name_of(cfg))
        self.runtime_config_queue.add(name_of(cfg))

    def _runtime_config_updated(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        if _needs_resync(old, new):
            self.logger.debug("Update ContainerRuntimeConfig %s", name_of(new))
            self.runtime_config_queue.add(name_of(new))

    def _runtime_config_deleted(self, cfg: dict[str, Any]) -> None:
        try:
            cascade_delete(self.store, cfg)
        except Exception as exc:
            self.error_sink(exc)
            return
        self.logger.info("Deleted ContainerRuntimeConfig %s", name_of(cfg))

    def _image_changed(self, _obj: dict[str, Any]) -> None:
        self.image_queue.add(IMAGE_CONFIG_KEY)

    def request_stop(self) -> None:
        """Signal a running :meth:`run_forever` loop to stop."""
        self._external_stop.set()
        self.runtime_config_queue.shut_down()
        self.image_queue.shut_down()
        for informer in self.cache.informers.values():
            informer.request_stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _start_thread(self, name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run informers and workers until shutdown.

        1. Starts one list-then-watch thread per watched kind.
        2. Waits for every informer to finish its initial list.
        3. Starts ``settings.workers`` runtime-config workers and one image worker.
        4. Returns early if an informer thread exits on its own (RBAC denial),
           leaving the caller to treat it as an unexpected stop.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        if self.runtime_config_queue.shutting_down or self.image_queue.shutting_down:
            self._reset_queues()

        informer_stop = threading.Event()
        informer_threads = [
            self._start_thread(f"informer-{informer.kind.plural}", informer.run, informer_stop)
            for informer in self.cache.informers.values()
        ]
        worker_threads: list[threading.Thread] = []
        try:
            while not self._should_stop(stop):
                if self.cache.wait_for_sync(stop, timeout=SYNC_WAIT_SECONDS):
                    break
                if not all(thread.is_alive() for thread in informer_threads):
                    self.logger.error("An informer stopped before its initial list completed")
                    return
            if self._should_stop(stop):
                return

            for index in range(self.settings.workers):
                worker_threads.append(
                    self._start_thread(
                        f"{RUNTIME_CONFIG_QUEUE}-worker-{index}",
                        run_worker,
                        self.runtime_config_queue,
                        self.runtime_configs.sync,
                        self.error_sink,
                    )
                )
            worker_threads.append(
                self._start_thread(
                    f"{IMAGE_QUEUE}-worker",
                    run_worker,
                    self.image_queue,
                    self.image_policy.sync,
                    self.error_sink,
                )
            )
            self.ready.set()
            self.logger.info(
                "Started ContainerRuntimeConfig controller with %d worker(s)", self.settings.workers
            )

            while not self._should_stop(stop):
                if not all(thread.is_alive() for thread in informer_threads):
                    self.logger.error("An informer stopped unexpectedly; stopping controller")
                    return
                stop.wait(timeout=SYNC_WAIT_SECONDS)
        finally:
            self.ready.clear()
            informer_stop.set()
            self.runtime_config_queue.shut_down()
            self.image_queue.shut_down()
            for informer in self.cache.informers.values():
                informer.request_stop()
            for thread in worker_threads + informer_threads:
                thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
            self.logger.info("Shut down ContainerRuntimeConfig controller")


def build_controller(
    settings: Settings, core_api: CoreV1Api, custom_api: CustomObjectsApi
) -> ContainerRuntimeConfigController:
    """Construct a controller backed by the given Kubernetes API clients."""
    return ContainerRuntimeConfigController(ClusterStore(custom_api, core_api), settings)
