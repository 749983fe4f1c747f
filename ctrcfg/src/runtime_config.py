from __future__ import annotations

import copy
import logging
import time
from typing import Any

from kubernetes.client import ApiException

from ctrcfg.src.artifacts import (
    BUILT_IN_POOL_SELECTOR,
    CONTAINER_RUNTIME_INFIX,
    GENERATED_BY_VERSION_ANNOTATION,
    MC_NAME_SUFFIX_ANNOTATION,
    controller_owner_reference,
    generated_by_version,
    managed_key_for_config,
    managed_key_seccomp,
    new_machine_config,
    numeric_suffix,
    owner_uids,
    selects_pool,
)
from ctrcfg.src.cache import InformerCache
from ctrcfg.src.config import Settings
from ctrcfg.src.errors import SuffixCollisionError, SyncError, ValidationError
from ctrcfg.src.finalizers import add_finalizer, cascade_delete
from ctrcfg.src.kube import (
    CONTAINER_RUNTIME_CONFIG,
    CONTROLLER_CONFIG,
    CONTROLLER_CONFIG_NAME,
    MACHINE_CONFIG,
    MACHINE_CONFIG_POOL,
    ClusterStore,
)
from ctrcfg.src.metrics import METRICS
from ctrcfg.src.objects import (
    CONDITION_SUCCESS,
    RuntimeConfigSpec,
    annotations_of,
    finalizers_of,
    is_being_deleted,
    last_condition_type,
    name_of,
    new_condition,
    record_condition,
    validate_runtime_config,
)
from ctrcfg.src.render import (
    STORAGE_CONFIG_PATH,
    GeneratedFile,
    TemplateRenderer,
    crio_dropin_files,
    merge_storage_config,
    new_ignition,
    seccomp_use_default_files,
)
from ctrcfg.src.retry import UPDATE_BACKOFF, RetryPolicy, is_conflict, retry_on_conflict

LOGGER = logging.getLogger(__name__)

SENTINEL_KEY = "force-sync-on-upgrade"
SECCOMP_MARKER_CONFIG_MAP = "crio-seccomp-use-default-when-empty"
QUEUE_OWNER = "containerruntimeconfig"


def _generation(cfg: dict[str, Any]) -> int:
    return (cfg.get("metadata") or {}).get("generation") or 0


def _is_status_current(cfg: dict[str, Any], generation: int | None = None) -> bool:
    """True when the last recorded pass succeeded for *generation*.

    *generation* defaults to the generation of *cfg* itself.
    """
    if generation is None:
        generation = _generation(cfg)
    observed = (cfg.get("status") or {}).get("observedGeneration") or 0
    return observed >= generation and last_condition_type(cfg) == CONDITION_SUCCESS


class RuntimeConfigSynchronizer:
    """Reconciles ContainerRuntimeConfig objects into per-pool MachineConfigs.

    Reads come from the informer cache; every write goes to the cluster
    store under :func:`retry_on_conflict`.  :meth:`sync` raises for failures
    the dispatch queue should retry and returns normally for terminal ones,
    which are only visible through the object's status conditions.
    """

    def __init__(
        self,
        store: ClusterStore,
        cache: InformerCache,
        renderer: TemplateRenderer,
        settings: Settings,
        policy: RetryPolicy = UPDATE_BACKOFF,
    ) -> None:
        self.store = store
        self.cache = cache
        self.renderer = renderer
        self.settings = settings
        self.policy = policy

    def sync(self, key: str) -> None:
        started = time.monotonic()
        LOGGER.debug("Started syncing ContainerRuntimeConfig %r", key)
        try:
            self._sync(key)
        finally:
            LOGGER.debug(
                "Finished syncing ContainerRuntimeConfig %r (%.3fs)",
                key,
                time.monotonic() - started,
            )

    def _sync(self, key: str) -> None:
        if key == SENTINEL_KEY:
            self.ensure_seccomp_use_default()
            return

        cfg = self.cache.get(CONTAINER_RUNTIME_CONFIG, key)
        if cfg is None:
            LOGGER.info("ContainerRuntimeConfig %s has been deleted", key)
            return

        if is_being_deleted(cfg):
            if finalizers_of(cfg):
                cascade_delete(self.store, cfg, self.policy)
            return

        processed = _generation(cfg)
        try:
            spec = validate_runtime_config(cfg)
            pools = self.pools_for_config(cfg)
        except ValidationError as exc:
            LOGGER.warning("ContainerRuntimeConfig %s is invalid: %s", key, exc)
            self._record_status(cfg, exc, processed)
            return

        try:
            degraded = self._sync_pools(cfg, spec, pools)
            self.clean_up_duplicated_artifacts()
        except ValidationError as exc:
            LOGGER.warning("ContainerRuntimeConfig %s cannot be applied: %s", key, exc)
            self._record_status(cfg, exc, processed)
            return
        except Exception as exc:
            self._record_status(cfg, exc, processed)
            raise

        self._record_status(cfg, degraded, processed)

    def pools_for_config(self, cfg: dict[str, Any]) -> list[dict[str, Any]]:
        """Return the MachineConfigPools *cfg* targets; no match is an error."""
        pools = [
            pool for pool in self.cache.list(MACHINE_CONFIG_POOL) if selects_pool(cfg, pool)
        ]
        if not pools:
            raise ValidationError(
                "could not find any MachineConfigPool set for ContainerRuntimeConfig "
                f"{name_of(cfg)}"
            )
        return pools

    def _sync_pools(
        self,
        cfg: dict[str, Any],
        spec: RuntimeConfigSpec,
        pools: list[dict[str, Any]],
    ) -> SyncError | None:
        """Write the MachineConfig of every pool; returns a non-fatal merge error, if any."""
        controller_config = self.cache.get(CONTROLLER_CONFIG, CONTROLLER_CONFIG_NAME)
        if controller_config is None:
            raise SyncError(f"could not get ControllerConfig {CONTROLLER_CONFIG_NAME}")

        all_configs = self.cache.list(CONTAINER_RUNTIME_CONFIG)
        degraded: SyncError | None = None
        for pool in pools:
            role = name_of(pool)
            managed_key = managed_key_for_config(pool, cfg, all_configs)
            existing = self.store.get_or_none(MACHINE_CONFIG, managed_key)
            if existing is not None:
                self._check_owner(existing, cfg)
                if (
                    _is_status_current(cfg)
                    and generated_by_version(existing) == self.settings.build_version
                ):
                    METRICS.artifacts_skipped_total.labels(owner=QUEUE_OWNER).inc()
                    LOGGER.debug("MachineConfig %s is current, skipping", managed_key)
                    continue

            files: list[GeneratedFile] = []
            if spec.overlay_size_bytes:
                rendered = self.renderer.render_defaults(role, controller_config)
                try:
                    storage_toml = merge_storage_config(rendered, spec.overlay_size)
                    files.append((STORAGE_CONFIG_PATH, storage_toml))
                except SyncError as exc:
                    LOGGER.warning(
                        "Error merging user changes to storage.conf for %s: %s", name_of(cfg), exc
                    )
                    if degraded is None:
                        degraded = exc
            if spec.has_crio_overrides:
                files.extend(
                    crio_dropin_files(spec.log_level, spec.pids_limit, spec.log_size_max_bytes)
                )
            ignition = new_ignition(files)

            if existing is None and MC_NAME_SUFFIX_ANNOTATION not in annotations_of(cfg):
                self._add_suffix_annotation(cfg, numeric_suffix(managed_key) or "")

            operation = self._create_or_update(cfg, role, managed_key, ignition)
            METRICS.artifacts_written_total.labels(owner=QUEUE_OWNER, operation=operation).inc()
            add_finalizer(self.store, name_of(cfg), managed_key, self.policy)
            LOGGER.info(
                "Applied ContainerRuntimeConfig %s on MachineConfigPool %s", name_of(cfg), role
            )
        return degraded

    def _check_owner(self, mc: dict[str, Any], cfg: dict[str, Any]) -> None:
        uid = (cfg.get("metadata") or {}).get("uid")
        owners = owner_uids(mc)
        if owners and uid not in owners:
            raise SuffixCollisionError(
                f"MachineConfig {name_of(mc)} is owned by another ContainerRuntimeConfig"
            )

    def _stamp(self, mc: dict[str, Any], cfg: dict[str, Any], ignition: dict[str, Any]) -> None:
        mc.setdefault("spec", {})["config"] = ignition
        meta = mc.setdefault("metadata", {})
        meta["annotations"] = {GENERATED_BY_VERSION_ANNOTATION: self.settings.build_version}
        meta["ownerReferences"] = [controller_owner_reference(cfg)]

    def _create_or_update(
        self, cfg: dict[str, Any], role: str, managed_key: str, ignition: dict[str, Any]
    ) -> str:
        def attempt() -> str:
            current = self.store.get_or_none(MACHINE_CONFIG, managed_key)
            if current is None:
                body = new_machine_config(role, managed_key, ignition)
                self._stamp(body, cfg, ignition)
                self.store.create(MACHINE_CONFIG, body)
                return "create"
            self._check_owner(current, cfg)
            self._stamp(current, cfg, ignition)
            self.store.replace(MACHINE_CONFIG, managed_key, current)
            return "update"

        try:
            return retry_on_conflict(self.policy, attempt)
        except ApiException as exc:
            raise SyncError(f"could not Create/Update MachineConfig {managed_key}: {exc}") from exc

    def _add_suffix_annotation(self, cfg: dict[str, Any], suffix: str) -> None:
        name = name_of(cfg)

        def attempt() -> None:
            current = self.store.get(CONTAINER_RUNTIME_CONFIG, name)
            annotations = current.setdefault("metadata", {}).get("annotations") or {}
            if annotations.get(MC_NAME_SUFFIX_ANNOTATION) == suffix:
                return
            annotations[MC_NAME_SUFFIX_ANNOTATION] = suffix
            current["metadata"]["annotations"] = annotations
            self.store.replace(CONTAINER_RUNTIME_CONFIG, name, current)

        try:
            retry_on_conflict(self.policy, attempt)
        except ApiException as exc:
            LOGGER.warning(
                "Error updating ContainerRuntimeConfig %s with annotation %s=%r: %s",
                name,
                MC_NAME_SUFFIX_ANNOTATION,
                suffix,
                exc,
            )
            raise SyncError(
                f"could not update annotation for ContainerRuntimeConfig {name}"
            ) from exc

    def clean_up_duplicated_artifacts(self) -> None:
        """Delete container runtime MachineConfigs stamped by another controller build."""
        for mc in self.store.list(MACHINE_CONFIG):
            name = name_of(mc)
            if CONTAINER_RUNTIME_INFIX not in name:
                continue
            if generated_by_version(mc) == self.settings.build_version:
                continue
            try:
                self.store.delete(MACHINE_CONFIG, name)
            except ApiException as exc:
                raise SyncError(
                    f"error deleting degraded containerruntime machine config {name}: {exc}"
                ) from exc
            LOGGER.info("Deleted stale MachineConfig %s", name)

    def _record_status(
        self, cfg: dict[str, Any], error: BaseException | None, processed: int
    ) -> None:
        """Record the outcome of the pass that processed generation *processed*.

        The stored object may already be newer than the cached copy the pass
        read, so its own generation is never the one reported as observed.
        """
        name = name_of(cfg)
        condition = new_condition(error)

        def attempt() -> None:
            current = self.store.get_or_none(CONTAINER_RUNTIME_CONFIG, name)
            if current is None:
                return
            if error is None and _is_status_current(current, processed):
                return
            status = current.get("status") or {}
            status["observedGeneration"] = processed
            record_condition(status, condition)
            current["status"] = status
            self.store.replace_status(CONTAINER_RUNTIME_CONFIG, name, current)

        try:
            retry_on_conflict(self.policy, attempt)
        except ApiException as exc:
            METRICS.status_update_failures_total.inc()
            LOGGER.warning("Error updating ContainerRuntimeConfig %s status: %s", name, exc)

    def ensure_seccomp_use_default(self) -> None:
        """Create the seccomp-use-default MachineConfig on every built-in pool once.

        The marker ConfigMap records that this already happened, so artifacts
        an administrator deleted afterwards are not recreated.
        """
        namespace = self.settings.namespace
        if self.store.config_map_exists(namespace, SECCOMP_MARKER_CONFIG_MAP):
            return

        ignition = new_ignition(seccomp_use_default_files())
        for pool in self.cache.list(MACHINE_CONFIG_POOL, BUILT_IN_POOL_SELECTOR):
            managed_key = managed_key_seccomp(pool)
            body = new_machine_config(name_of(pool), managed_key, ignition)

            def create_missing(managed_key: str = managed_key, body: dict[str, Any] = body) -> bool:
                if self.store.get_or_none(MACHINE_CONFIG, managed_key) is not None:
                    return False
                self.store.create(MACHINE_CONFIG, copy.deepcopy(body))
                return True

            try:
                created = retry_on_conflict(self.policy, create_missing)
            except ApiException as exc:
                raise SyncError(
                    f"could not create MachineConfig for crio-seccomp-use-default: {exc}"
                ) from exc
            if created:
                METRICS.artifacts_written_total.labels(owner="seccomp", operation="create").inc()
                LOGGER.info(
                    "Applied seccomp use default MachineConfig %s on MachineConfigPool %s",
                    managed_key,
                    name_of(pool),
                )

        try:
            self.store.create_config_map(namespace, SECCOMP_MARKER_CONFIG_MAP)
        except ApiException as exc:
            if not is_conflict(exc):
                raise SyncError(
                    f"error creating {SECCOMP_MARKER_CONFIG_MAP} config map: {exc}"
                ) from exc
