from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from ctrcfg.src.artifacts import (
    BUILT_IN_POOL_SELECTOR,
    GENERATED_BY_VERSION_ANNOTATION,
    generated_by_version,
    image_owner_reference,
    managed_key_registries,
    new_machine_config,
)
from ctrcfg.src.cache import InformerCache
from ctrcfg.src.config import Settings
from ctrcfg.src.errors import ReferenceParseError, SyncError
from ctrcfg.src.kube import (
    CLUSTER_VERSION,
    CONTROLLER_CONFIG,
    CONTROLLER_CONFIG_NAME,
    IMAGE_CONFIG,
    IMAGE_CONTENT_SOURCE_POLICY,
    MACHINE_CONFIG,
    MACHINE_CONFIG_POOL,
    ClusterStore,
)
from ctrcfg.src.metrics import METRICS
from ctrcfg.src.objects import RegistrySources, name_of
from ctrcfg.src.render import TemplateRenderer, encode_ignition, registries_ignition
from ctrcfg.src.retry import UPDATE_BACKOFF, RetryPolicy, retry_on_conflict

LOGGER = logging.getLogger(__name__)

IMAGE_CONFIG_KEY = "cluster"
CLUSTER_VERSION_NAME = "version"
DEFAULT_DOMAIN = "docker.io"
QUEUE_OWNER = "image"

_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = rf"{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?"
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_NAME = rf"(?:{_DOMAIN}/)?{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]+"

_REFERENCE = re.compile(rf"^(?P<name>{_NAME})(?::(?P<tag>{_TAG}))?(?:@(?P<digest>{_DIGEST}))?$")
_SCOPE = re.compile(rf"^(?:{_NAME}|\*\.{_DOMAIN})$")


@dataclass(frozen=True)
class ImageReference:
    """A parsed container image reference such as ``quay.io/org/repo@sha256:...``."""

    domain: str
    path: str
    tag: str | None = None
    digest: str | None = None

    @property
    def repository(self) -> str:
        return f"{self.domain}/{self.path}"


def parse_image_reference(reference: str) -> ImageReference:
    """Parse *reference*, applying the ``docker.io`` defaults for short names.

    Raises :class:`ReferenceParseError` when the reference is malformed.
    """
    match = _REFERENCE.match(reference or "")
    if match is None:
        raise ReferenceParseError(f"error parsing reference {reference!r}")
    name = match.group("name")
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        domain, path = first, rest
    else:
        domain, path = DEFAULT_DOMAIN, name
        if "/" not in path:
            path = f"library/{path}"
    return ImageReference(domain, path, match.group("tag"), match.group("digest"))


def is_valid_scope(scope: str) -> bool:
    """True for ``host[:port][/path]`` scopes and ``*.domain`` wildcards."""
    return bool(_SCOPE.match(scope))


def scope_covers(scope: str, reference: ImageReference) -> bool:
    """True if blocking *scope* would block pulls of *reference*."""
    if scope.startswith("*."):
        host = reference.domain.split(":", 1)[0]
        return host.endswith(scope[1:])
    repository = reference.repository
    return repository == scope or repository.startswith(f"{scope}/")


def valid_blocked_registries(
    release_image: str, sources: RegistrySources
) -> tuple[list[str], list[str]]:
    """Filter the requested blocked registries down to the ones safe to block.

    Entries that are not valid scopes, and entries covering the registry
    serving the release payload, are dropped.  Returns ``(blocked, warnings)``
    where each warning explains one dropped entry.
    """
    release = parse_image_reference(release_image)
    blocked: list[str] = []
    warnings: list[str] = []
    for scope in sources.blocked:
        if not is_valid_scope(scope):
            warnings.append(f"invalid entry {scope!r} in blocked registries")
        elif scope_covers(scope, release):
            warnings.append(
                f"{scope!r} cannot be blocked because it contains the release payload "
                f"image {release_image!r}"
            )
        elif scope not in blocked:
            blocked.append(scope)
    return blocked, warnings


class ImagePolicySynchronizer:
    """Renders the cluster-wide Image config into each built-in pool's registries MachineConfig."""

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
        LOGGER.debug("Started syncing ImageConfig %r", key)
        try:
            self._sync()
        finally:
            LOGGER.debug("Finished syncing ImageConfig %r (%.3fs)", key, time.monotonic() - started)

    def _sync(self) -> None:
        image = self.cache.get(IMAGE_CONFIG, IMAGE_CONFIG_KEY)
        if image is None:
            LOGGER.info("ImageConfig %r does not exist or has been deleted", IMAGE_CONFIG_KEY)
            return
        cluster_version = self.cache.get(CLUSTER_VERSION, CLUSTER_VERSION_NAME)
        if cluster_version is None:
            LOGGER.info("ClusterVersion %r does not exist", CLUSTER_VERSION_NAME)
            return

        sources = RegistrySources.from_object(image)
        release_image = ((cluster_version.get("status") or {}).get("desired") or {}).get("image")
        blocked, warnings = valid_blocked_registries(release_image or "", sources)
        for warning in warnings:
            LOGGER.warning("%s, skipping", warning)

        controller_config = self.cache.get(CONTROLLER_CONFIG, CONTROLLER_CONFIG_NAME)
        if controller_config is None:
            raise SyncError(f"could not get ControllerConfig {CONTROLLER_CONFIG_NAME}")

        icsp_rules = self.cache.list(IMAGE_CONTENT_SOURCE_POLICY)
        for pool in self.cache.list(MACHINE_CONFIG_POOL, BUILT_IN_POOL_SELECTOR):
            self._sync_pool(pool, image, controller_config, sources, blocked, icsp_rules)

    def _sync_pool(
        self,
        pool: dict[str, Any],
        image: dict[str, Any],
        controller_config: dict[str, Any],
        sources: RegistrySources,
        blocked: list[str],
        icsp_rules: list[dict[str, Any]],
    ) -> None:
        role = name_of(pool)
        managed_key = managed_key_registries(pool)

        def attempt() -> str | None:
            ignition = registries_ignition(
                self.renderer,
                controller_config,
                role,
                sources.insecure,
                blocked,
                sources.allowed,
                sources.search,
                icsp_rules,
            )
            existing = self.store.get_or_none(MACHINE_CONFIG, managed_key)
            if (
                existing is not None
                and encode_ignition((existing.get("spec") or {}).get("config"))
                == encode_ignition(ignition)
                and generated_by_version(existing) == self.settings.build_version
            ):
                return None

            mc = existing
            if mc is None:
                mc = new_machine_config(role, managed_key, ignition)
            mc.setdefault("spec", {})["config"] = ignition
            meta = mc.setdefault("metadata", {})
            meta["annotations"] = {GENERATED_BY_VERSION_ANNOTATION: self.settings.build_version}
            meta["ownerReferences"] = [image_owner_reference(image)]
            if existing is None:
                self.store.create(MACHINE_CONFIG, mc)
                return "create"
            self.store.replace(MACHINE_CONFIG, managed_key, mc)
            return "update"

        try:
            operation = retry_on_conflict(self.policy, attempt)
        except ApiException as exc:
            raise SyncError(f"could not Create/Update MachineConfig {managed_key}: {exc}") from exc

        if operation is None:
            METRICS.artifacts_skipped_total.labels(owner=QUEUE_OWNER).inc()
            return
        METRICS.artifacts_written_total.labels(owner=QUEUE_OWNER, operation=operation).inc()
        LOGGER.info("Applied ImageConfig %s on MachineConfigPool %s", IMAGE_CONFIG_KEY, role)
