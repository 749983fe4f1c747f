from __future__ import annotations

import copy
import itertools
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from ctrcfg.src import selectors
from ctrcfg.src.artifacts import BUILT_IN_LABEL_KEY
from ctrcfg.src.config import Settings
from ctrcfg.src.kube import (
    CLUSTER_VERSION,
    CONTAINER_RUNTIME_CONFIG,
    CONTROLLER_CONFIG,
    CONTROLLER_CONFIG_NAME,
    IMAGE_CONFIG,
    MACHINE_CONFIG_POOL,
    ClusterStore,
    ResourceKind,
)
from ctrcfg.src.retry import RetryPolicy

NO_WAIT = RetryPolicy(steps=5, duration=0.0, jitter=0.0)


def _merge_patch(target: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = _merge_patch(result.get(key), value)
    return result


class FakeStore(ClusterStore):
    """In-memory cluster store with resourceVersion conflicts and write accounting."""

    def __init__(self) -> None:
        super().__init__(custom_api=None, core_api=None)  # type: ignore[arg-type]
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.config_maps: set[tuple[str, str]] = set()
        self.writes: list[tuple[str, str, str]] = []
        self._failures: dict[tuple[str, str, str], list[int]] = {}
        self._resource_versions = itertools.count(1)
        self._uids = itertools.count(1)

    # -- test helpers -----------------------------------------------------

    def seed(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(obj)
        meta = stored.setdefault("metadata", {})
        meta.setdefault("uid", f"uid-{next(self._uids)}")
        meta.setdefault("generation", 1)
        meta["resourceVersion"] = str(next(self._resource_versions))
        self.objects[(kind.plural, meta["name"])] = stored
        return copy.deepcopy(stored)

    def peek(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        obj = self.objects.get((kind.plural, name))
        return copy.deepcopy(obj) if obj is not None else None

    def names(self, kind: ResourceKind) -> list[str]:
        return sorted(name for plural, name in self.objects if plural == kind.plural)

    def fail(self, verb: str, kind: ResourceKind | str, name: str, *statuses: int) -> None:
        """Make the next calls of ``verb`` on the object raise the given HTTP statuses."""
        plural = kind if isinstance(kind, str) else kind.plural
        self._failures.setdefault((verb, plural, name), []).extend(statuses)

    def _maybe_fail(self, verb: str, plural: str, name: str) -> None:
        pending = self._failures.get((verb, plural, name))
        if pending:
            raise ApiException(status=pending.pop(0), reason="injected")

    def _record(self, verb: str, plural: str, name: str) -> None:
        self.writes.append((verb, plural, name))

    def _stored(self, kind: ResourceKind, name: str) -> dict[str, Any]:
        obj = self.objects.get((kind.plural, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return obj

    def _check_version(self, stored: dict[str, Any], body: dict[str, Any]) -> None:
        expected = (body.get("metadata") or {}).get("resourceVersion")
        if expected and expected != stored["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")

    # -- ClusterStore ------------------------------------------------------

    def get(self, kind: ResourceKind, name: str) -> dict[str, Any]:
        self._maybe_fail("get", kind.plural, name)
        return copy.deepcopy(self._stored(kind, name))

    def list(
        self, kind: ResourceKind, match_labels: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        items = [
            copy.deepcopy(obj)
            for (plural, _), obj in sorted(self.objects.items())
            if plural == kind.plural
        ]
        if match_labels:
            items = [
                obj
                for obj in items
                if selectors.matches({"matchLabels": match_labels}, obj["metadata"].get("labels"))
            ]
        return items

    def list_function(self, kind: ResourceKind) -> Callable[..., dict[str, Any]]:
        def list_objects(**kwargs: Any) -> dict[str, Any]:
            return {
                "metadata": {"resourceVersion": str(next(self._resource_versions))},
                "items": self.list(kind),
            }

        return list_objects

    def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self._maybe_fail("create", kind.plural, name)
        if (kind.plural, name) in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self._record("create", kind.plural, name)
        stored = copy.deepcopy(body)
        stored["metadata"].pop("resourceVersion", None)
        return self.seed(kind, stored)

    def replace(self, kind: ResourceKind, name: str, body: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("replace", kind.plural, name)
        stored = self._stored(kind, name)
        self._check_version(stored, body)
        self._record("replace", kind.plural, name)
        updated = copy.deepcopy(body)
        meta = updated.setdefault("metadata", {})
        meta["uid"] = stored["metadata"]["uid"]
        meta["generation"] = stored["metadata"]["generation"]
        if updated.get("spec") != stored.get("spec"):
            meta["generation"] += 1
        if "status" in stored:
            updated["status"] = stored["status"]
        else:
            updated.pop("status", None)
        meta["resourceVersion"] = str(next(self._resource_versions))
        self.objects[(kind.plural, name)] = updated
        return copy.deepcopy(updated)

    def replace_status(
        self, kind: ResourceKind, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        self._maybe_fail("replace_status", kind.plural, name)
        stored = self._stored(kind, name)
        self._check_version(stored, body)
        self._record("replace_status", kind.plural, name)
        stored["status"] = copy.deepcopy(body.get("status") or {})
        stored["metadata"]["resourceVersion"] = str(next(self._resource_versions))
        return copy.deepcopy(stored)

    def patch(self, kind: ResourceKind, name: str, patch: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("patch", kind.plural, name)
        stored = self._stored(kind, name)
        self._record("patch", kind.plural, name)
        updated = _merge_patch(stored, patch)
        updated["metadata"]["resourceVersion"] = str(next(self._resource_versions))
        self.objects[(kind.plural, name)] = updated
        return copy.deepcopy(updated)

    def delete(self, kind: ResourceKind, name: str) -> bool:
        self._maybe_fail("delete", kind.plural, name)
        if (kind.plural, name) not in self.objects:
            return False
        self._record("delete", kind.plural, name)
        del self.objects[(kind.plural, name)]
        return True

    def config_map_exists(self, namespace: str, name: str) -> bool:
        return (namespace, name) in self.config_maps

    def create_config_map(self, namespace: str, name: str) -> None:
        if (namespace, name) in self.config_maps:
            raise ApiException(status=409, reason="AlreadyExists")
        self._record("create", "configmaps", name)
        self.config_maps.add((namespace, name))


class StoreBackedCache:
    """Cache stand-in reading the fake store's current contents."""

    def __init__(self, store: FakeStore) -> None:
        self.store = store

    def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        return self.store.peek(kind, name)

    def list(
        self, kind: ResourceKind, selector: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        items = [
            obj
            for obj in (self.store.peek(kind, name) for name in self.store.names(kind))
            if obj is not None
        ]
        if selector is not None:
            items = [
                obj for obj in items if selectors.matches(selector, obj["metadata"].get("labels"))
            ]
        return items


class LaggingCache(StoreBackedCache):
    """StoreBackedCache that keeps serving frozen copies of chosen objects.

    Stands in for an informer that has not yet seen the latest watch event.
    """

    def __init__(self, store: FakeStore) -> None:
        super().__init__(store)
        self.frozen: dict[tuple[str, str], dict[str, Any]] = {}

    def freeze(self, kind: ResourceKind, name: str) -> None:
        obj = self.store.peek(kind, name)
        assert obj is not None
        self.frozen[(kind.plural, name)] = obj

    def catch_up(self) -> None:
        self.frozen.clear()

    def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        frozen = self.frozen.get((kind.plural, name))
        if frozen is not None:
            return copy.deepcopy(frozen)
        return super().get(kind, name)

    def list(
        self, kind: ResourceKind, selector: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        return [
            self.get(kind, obj["metadata"]["name"]) or obj for obj in super().list(kind, selector)
        ]


def make_settings(build_version: str = "v2", **overrides: Any) -> Settings:
    return Settings(build_version=build_version, **overrides)


def make_pool(
    name: str, labels: dict[str, str] | None = None, built_in: bool = False
) -> dict[str, Any]:
    pool_labels = dict(labels or {})
    pool_labels.setdefault(f"pools.operator.machineconfiguration.openshift.io/{name}", "")
    if built_in:
        pool_labels[BUILT_IN_LABEL_KEY] = ""
    return {
        "apiVersion": MACHINE_CONFIG_POOL.api_version,
        "kind": MACHINE_CONFIG_POOL.kind,
        "metadata": {"name": name, "labels": pool_labels},
        "spec": {},
    }


def pool_selector(name: str) -> dict[str, Any]:
    return {"matchLabels": {f"pools.operator.machineconfiguration.openshift.io/{name}": ""}}


def make_runtime_config(
    name: str,
    runtime: dict[str, Any] | None = None,
    selector: dict[str, Any] | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    cfg: dict[str, Any] = {
        "apiVersion": CONTAINER_RUNTIME_CONFIG.api_version,
        "kind": CONTAINER_RUNTIME_CONFIG.kind,
        "metadata": {"name": name},
        "spec": {"containerRuntimeConfig": runtime or {}},
    }
    if selector is not None:
        cfg["spec"]["machineConfigPoolSelector"] = selector
    if annotations is not None:
        cfg["metadata"]["annotations"] = annotations
    return cfg


def make_controller_config(
    release_image: str = "quay.io/example/release@sha256:abc",
) -> dict[str, Any]:
    return {
        "apiVersion": CONTROLLER_CONFIG.api_version,
        "kind": CONTROLLER_CONFIG.kind,
        "metadata": {"name": CONTROLLER_CONFIG_NAME},
        "spec": {"releaseImage": release_image},
    }


def make_image_config(**registry_sources: list[str]) -> dict[str, Any]:
    return {
        "apiVersion": IMAGE_CONFIG.api_version,
        "kind": IMAGE_CONFIG.kind,
        "metadata": {"name": "cluster"},
        "spec": {"registrySources": registry_sources},
    }


def make_cluster_version(image: str = "quay.io/example/release@sha256:abc") -> dict[str, Any]:
    return {
        "apiVersion": CLUSTER_VERSION.api_version,
        "kind": CLUSTER_VERSION.kind,
        "metadata": {"name": "version"},
        "status": {"desired": {"image": image}},
    }
