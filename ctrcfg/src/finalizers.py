from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from ctrcfg.src.kube import CONTAINER_RUNTIME_CONFIG, MACHINE_CONFIG, ClusterStore
from ctrcfg.src.objects import finalizers_of, name_of
from ctrcfg.src.retry import UPDATE_BACKOFF, RetryPolicy, is_not_found, retry_on_conflict

LOGGER = logging.getLogger(__name__)


def _additions(current: dict[str, Any], modified: dict[str, Any]) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for key, value in modified.items():
        if key not in current:
            patch[key] = value
        elif current[key] != value:
            if isinstance(value, dict) and isinstance(current[key], dict):
                nested = _additions(current[key], value)
                if nested:
                    patch[key] = nested
            else:
                patch[key] = value
    return patch


def _deletions(original: dict[str, Any], modified: dict[str, Any]) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for key, value in original.items():
        if key not in modified:
            patch[key] = None
        elif isinstance(value, dict) and isinstance(modified[key], dict):
            nested = _deletions(value, modified[key])
            if nested:
                patch[key] = nested
    return patch


def _merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def create_three_way_merge_patch(
    original: dict[str, Any], modified: dict[str, Any], current: dict[str, Any]
) -> dict[str, Any]:
    """Create an RFC 7386 merge patch turning *current* into *modified*.

    Keys present in *original* but absent from *modified* are deleted
    (``null``); additions and changes are taken relative to *current*.
    Lists are replaced as a whole, so only fields the caller touched appear
    in the patch and unrelated concurrent edits survive.
    """
    return _merge(_deletions(original, modified), _additions(current, modified))


def _patch_finalizers(
    store: ClusterStore,
    name: str,
    mutate: Callable[[list[str]], list[str]],
    policy: RetryPolicy,
) -> None:
    def attempt() -> None:
        try:
            current = store.get(CONTAINER_RUNTIME_CONFIG, name)
        except ApiException as exc:
            if is_not_found(exc):
                return
            raise

        modified = copy.deepcopy(current)
        finalizers = mutate(finalizers_of(current))
        if finalizers:
            modified["metadata"]["finalizers"] = finalizers
        else:
            modified["metadata"].pop("finalizers", None)

        patch = create_three_way_merge_patch(current, modified, current)
        if not patch:
            return
        store.patch(CONTAINER_RUNTIME_CONFIG, name, patch)

    retry_on_conflict(policy, attempt)


def add_finalizer(
    store: ClusterStore, name: str, finalizer: str, policy: RetryPolicy = UPDATE_BACKOFF
) -> None:
    """Append *finalizer* to the ContainerRuntimeConfig unless already present."""

    def append_once(finalizers: list[str]) -> list[str]:
        if finalizer not in finalizers:
            finalizers.append(finalizer)
        return finalizers

    _patch_finalizers(store, name, append_once, policy)


def pop_finalizer(store: ClusterStore, name: str, policy: RetryPolicy = UPDATE_BACKOFF) -> None:
    """Remove the first finalizer of the ContainerRuntimeConfig."""
    _patch_finalizers(store, name, lambda finalizers: finalizers[1:], policy)


def cascade_delete(
    store: ClusterStore, cfg: dict[str, Any], policy: RetryPolicy = UPDATE_BACKOFF
) -> None:
    """Delete the MachineConfig named by the first finalizer, then drop that finalizer.

    An already deleted MachineConfig counts as success; any other delete error
    propagates so the key is retried.
    """
    finalizers = finalizers_of(cfg)
    if not finalizers:
        return
    mc_name = finalizers[0]
    if store.delete(MACHINE_CONFIG, mc_name):
        LOGGER.info("Deleted MachineConfig %s owned by %s", mc_name, name_of(cfg))
    else:
        LOGGER.info("MachineConfig %s owned by %s was already gone", mc_name, name_of(cfg))
    pop_finalizer(store, name_of(cfg), policy)
