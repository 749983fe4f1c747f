"""MachineConfigs rendered before the controller runs against a live cluster.

These mirror what the synchronizers produce, without touching the cluster
store.  Registries configs carry no ``generated-by-controller-version``
annotation, so the first live image sync always re-renders them.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ctrcfg.src.artifacts import (
    image_owner_reference,
    managed_key_registries,
    managed_key_seccomp,
    new_machine_config,
)
from ctrcfg.src.image_policy import valid_blocked_registries
from ctrcfg.src.objects import RegistrySources, name_of
from ctrcfg.src.render import (
    TemplateRenderer,
    new_ignition,
    registries_ignition,
    seccomp_use_default_files,
)

LOGGER = logging.getLogger(__name__)


def run_seccomp_use_default_bootstrap(pools: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Return one seccomp-use-default MachineConfig per pool."""
    return [
        new_machine_config(
            name_of(pool),
            managed_key_seccomp(pool),
            new_ignition(seccomp_use_default_files()),
        )
        for pool in pools
    ]


def run_image_bootstrap(
    renderer: TemplateRenderer,
    controller_config: dict[str, Any],
    pools: Sequence[dict[str, Any]],
    icsp_rules: Sequence[dict[str, Any]],
    image: dict[str, Any] | None,
) -> list[dict[str, Any]]:
    """Return the registries MachineConfig of every pool.

    The release image is read from ``controller_config.spec.releaseImage``;
    with no *image* only mirror rules from *icsp_rules* are applied.
    """
    sources = RegistrySources()
    blocked: list[str] = []
    if image is not None:
        sources = RegistrySources.from_object(image)
        release_image = (controller_config.get("spec") or {}).get("releaseImage") or ""
        blocked, warnings = valid_blocked_registries(release_image, sources)
        for warning in warnings:
            LOGGER.warning("%s, skipping", warning)

    machine_configs = []
    for pool in pools:
        role = name_of(pool)
        ignition = registries_ignition(
            renderer,
            controller_config,
            role,
            sources.insecure,
            blocked,
            sources.allowed,
            sources.search,
            icsp_rules,
        )
        mc = new_machine_config(role, managed_key_registries(pool), ignition)
        mc["metadata"]["ownerReferences"] = [image_owner_reference(None)]
        machine_configs.append(mc)
    return machine_configs
