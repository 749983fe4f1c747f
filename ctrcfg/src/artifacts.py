from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any

from ctrcfg.src import selectors
from ctrcfg.src.errors import ValidationError
from ctrcfg.src.kube import CONTAINER_RUNTIME_CONFIG, IMAGE_CONFIG, MACHINE_CONFIG
from ctrcfg.src.objects import annotations_of, name_of

LOGGER = logging.getLogger(__name__)

ROLE_LABEL_KEY = "machineconfiguration.openshift.io/role"
BUILT_IN_LABEL_KEY = "machineconfiguration.openshift.io/mco-built-in"
GENERATED_BY_VERSION_ANNOTATION = "machineconfiguration.openshift.io/generated-by-controller-version"
MC_NAME_SUFFIX_ANNOTATION = "machineconfiguration.openshift.io/mc-name-suffix"

BUILT_IN_POOL_SELECTOR: dict[str, Any] = {
    "matchExpressions": [{"key": BUILT_IN_LABEL_KEY, "operator": "Exists"}]
}

CONTAINER_RUNTIME_INFIX = "generated-containerruntime"
MAX_NAME_SUFFIX = 9

_NUMERIC_SUFFIX = re.compile(rf"^99-.+-{CONTAINER_RUNTIME_INFIX}-(\d+)$")


def managed_key_seccomp(pool: dict[str, Any]) -> str:
    return f"99-{name_of(pool)}-generated-crio-seccomp-use-default"


def managed_key_registries(pool: dict[str, Any]) -> str:
    return f"99-{name_of(pool)}-generated-registries"


def _container_runtime_key(pool: dict[str, Any], suffix: str | int | None = None) -> str:
    base = f"99-{name_of(pool)}-{CONTAINER_RUNTIME_INFIX}"
    if suffix in (None, ""):
        return base
    return f"{base}-{suffix}"


def selects_pool(cfg: dict[str, Any], pool: dict[str, Any]) -> bool:
    """Return True if the ContainerRuntimeConfig targets *pool*.

    An empty or missing selector selects nothing.
    """
    selector = (cfg.get("spec") or {}).get("machineConfigPoolSelector")
    if selectors.is_empty(selector):
        return False
    try:
        return selectors.matches(selector, (pool.get("metadata") or {}).get("labels"))
    except ValueError as exc:
        raise ValidationError(f"invalid label selector: {exc}") from exc


def managed_key_for_config(
    pool: dict[str, Any],
    cfg: dict[str, Any],
    all_configs: Sequence[dict[str, Any]],
) -> str:
    """Compute the MachineConfig name *cfg* renders to for *pool*.

    The first ContainerRuntimeConfig targeting a pool owns the unsuffixed
    name.  Later ones get ``-<n>`` where ``n`` is one more than the largest
    suffix recorded in the ``mc-name-suffix`` annotation of the configs
    targeting the same pool, so newer configs sort after older ones.
    Other configs with an unparseable selector are left out of the count;
    their own sync records the validation failure.
    """
    targeting = [other for other in all_configs if _peer_selects_pool(other, cfg, pool)]
    for other in targeting:
        if name_of(other) != name_of(cfg):
            continue
        other_annotations = annotations_of(other)
        if MC_NAME_SUFFIX_ANNOTATION in other_annotations:
            return _container_runtime_key(pool, other_annotations[MC_NAME_SUFFIX_ANNOTATION])
        if len(targeting) < 2:
            return _container_runtime_key(pool)

    # A config we have not named yet: allocate the next suffix.
    highest = 0
    for other in targeting:
        raw = annotations_of(other).get(MC_NAME_SUFFIX_ANNOTATION)
        if raw in (None, ""):
            continue
        try:
            highest = max(highest, int(raw))
        except ValueError as exc:
            raise ValidationError(f"error converting {raw!r} to int: {exc}") from exc
    if highest + 1 > MAX_NAME_SUFFIX:
        raise ValidationError(
            "max number of supported ctr config (10) has been reached. "
            "Please delete old ctr configs before retrying"
        )
    return _container_runtime_key(pool, highest + 1)


def _peer_selects_pool(
    other: dict[str, Any], cfg: dict[str, Any], pool: dict[str, Any]
) -> bool:
    if name_of(other) == name_of(cfg):
        return selects_pool(other, pool)
    try:
        return selects_pool(other, pool)
    except ValidationError as exc:
        LOGGER.warning(
            "Ignoring ContainerRuntimeConfig %s while naming %s: %s",
            name_of(other),
            name_of(cfg),
            exc,
        )
        return False


def numeric_suffix(managed_key: str) -> str | None:
    match = _NUMERIC_SUFFIX.match(managed_key)
    return match.group(1) if match else None


def new_machine_config(role: str, name: str, ignition: dict[str, Any]) -> dict[str, Any]:
    """Return a fresh MachineConfig body for *role* carrying *ignition*."""
    return {
        "apiVersion": MACHINE_CONFIG.api_version,
        "kind": MACHINE_CONFIG.kind,
        "metadata": {
            "name": name,
            "labels": {ROLE_LABEL_KEY: role},
        },
        "spec": {"config": ignition},
    }


def controller_owner_reference(cfg: dict[str, Any]) -> dict[str, Any]:
    meta = cfg.get("metadata") or {}
    return {
        "apiVersion": CONTAINER_RUNTIME_CONFIG.api_version,
        "kind": CONTAINER_RUNTIME_CONFIG.kind,
        "name": meta.get("name"),
        "uid": meta.get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def image_owner_reference(image: dict[str, Any] | None) -> dict[str, Any]:
    """Owner reference to the Image config; name and UID are omitted at bootstrap."""
    reference: dict[str, Any] = {
        "apiVersion": IMAGE_CONFIG.api_version,
        "kind": IMAGE_CONFIG.kind,
    }
    if image is not None:
        meta = image.get("metadata") or {}
        reference["name"] = meta.get("name")
        reference["uid"] = meta.get("uid")
    return reference


def owner_uids(mc: dict[str, Any]) -> set[str]:
    return {
        ref.get("uid")
        for ref in (mc.get("metadata") or {}).get("ownerReferences") or []
        if ref.get("kind") == CONTAINER_RUNTIME_CONFIG.kind and ref.get("uid")
    }


def generated_by_version(mc: dict[str, Any]) -> str | None:
    return annotations_of(mc).get(GENERATED_BY_VERSION_ANNOTATION)
