from __future__ import annotations

import json

import pytest
import tomlkit

from ctrcfg.src.artifacts import GENERATED_BY_VERSION_ANNOTATION
from ctrcfg.src.config import DEFAULT_TEMPLATES_DIR
from ctrcfg.src.errors import ReferenceParseError, SyncError
from ctrcfg.src.image_policy import (
    ImagePolicySynchronizer,
    ImageReference,
    is_valid_scope,
    parse_image_reference,
    scope_covers,
    valid_blocked_registries,
)
from ctrcfg.src.kube import (
    CLUSTER_VERSION,
    CONTROLLER_CONFIG,
    IMAGE_CONFIG,
    IMAGE_CONTENT_SOURCE_POLICY,
    MACHINE_CONFIG,
    MACHINE_CONFIG_POOL,
)
from ctrcfg.src.objects import RegistrySources
from ctrcfg.src.render import (
    POLICY_CONFIG_PATH,
    REGISTRIES_CONFIG_PATH,
    SEARCH_REGISTRIES_DROPIN_PATH,
    TemplateRenderer,
    ignition_files,
)
from ctrcfg.tests.fakes import (
    NO_WAIT,
    FakeStore,
    StoreBackedCache,
    make_cluster_version,
    make_controller_config,
    make_image_config,
    make_pool,
    make_settings,
)

MASTER_KEY = "99-master-generated-registries"
WORKER_KEY = "99-worker-generated-registries"


@pytest.fixture
def store() -> FakeStore:
    store = FakeStore()
    store.seed(CONTROLLER_CONFIG, make_controller_config())
    store.seed(CLUSTER_VERSION, make_cluster_version())
    store.seed(MACHINE_CONFIG_POOL, make_pool("master", built_in=True))
    store.seed(MACHINE_CONFIG_POOL, make_pool("worker", built_in=True))
    store.seed(MACHINE_CONFIG_POOL, make_pool("infra"))
    return store


def _synchronizer(store: FakeStore, build_version: str = "v2") -> ImagePolicySynchronizer:
    return ImagePolicySynchronizer(
        store,
        StoreBackedCache(store),  # type: ignore[arg-type]
        TemplateRenderer(DEFAULT_TEMPLATES_DIR),
        make_settings(build_version),
        policy=NO_WAIT,
    )


def _files(store: FakeStore, name: str) -> dict[str, bytes]:
    mc = store.peek(MACHINE_CONFIG, name)
    assert mc is not None
    return ignition_files(mc["spec"]["config"])


def _registries(data: bytes) -> dict[str, dict[str, object]]:
    document = tomlkit.parse(data.decode()).unwrap()
    return {
        entry.get("location") or entry.get("prefix"): entry
        for entry in document.get("registry", [])
    }


def test_insecure_registries_only_render_registries_conf(store: FakeStore) -> None:
    store.seed(IMAGE_CONFIG, make_image_config(insecureRegistries=["insecure.example.com"]))

    _synchronizer(store).sync("cluster")

    assert store.names(MACHINE_CONFIG) == [MASTER_KEY, WORKER_KEY]
    files = _files(store, WORKER_KEY)
    assert set(files) == {REGISTRIES_CONFIG_PATH}
    assert _registries(files[REGISTRIES_CONFIG_PATH])["insecure.example.com"]["insecure"] is True

    mc = store.peek(MACHINE_CONFIG, WORKER_KEY)
    assert mc["metadata"]["annotations"] == {GENERATED_BY_VERSION_ANNOTATION: "v2"}
    image = store.peek(IMAGE_CONFIG, "cluster")
    (owner,) = mc["metadata"]["ownerReferences"]
    assert owner["kind"] == "Image"
    assert owner["uid"] == image["metadata"]["uid"]


def test_unchanged_image_config_issues_no_writes(store: FakeStore) -> None:
    store.seed(IMAGE_CONFIG, make_image_config(insecureRegistries=["insecure.example.com"]))
    synchronizer = _synchronizer(store)
    synchronizer.sync("cluster")
    writes_after_first_pass = len(store.writes)

    synchronizer.sync("cluster")

    assert store.writes[writes_after_first_pass:] == []


def test_new_controller_version_rewrites_unchanged_payload(store: FakeStore) -> None:
    store.seed(IMAGE_CONFIG, make_image_config(insecureRegistries=["insecure.example.com"]))
    _synchronizer(store, build_version="v1").sync("cluster")
    writes_after_first_pass = len(store.writes)

    _synchronizer(store, build_version="v2").sync("cluster")

    assert store.writes[writes_after_first_pass:] == [
        ("replace", MACHINE_CONFIG.plural, MASTER_KEY),
        ("replace", MACHINE_CONFIG.plural, WORKER_KEY),
    ]


def test_changed_payload_replaces_machine_config(store: FakeStore) -> None:
    store.seed(IMAGE_CONFIG, make_image_config(insecureRegistries=["insecure.example.com"]))
    synchronizer = _synchronizer(store)
    synchronizer.sync("cluster")

    store.seed(IMAGE_CONFIG, make_image_config(insecureRegistries=["other.example.com"]))
    synchronizer.sync("cluster")

    registries = _registries(_files(store, WORKER_KEY)[REGISTRIES_CONFIG_PATH])
    assert "other.example.com" in registries
    assert "insecure.example.com" not in registries


def test_release_registry_is_never_blocked(store: FakeStore) -> None:
    store.seed(
        IMAGE_CONFIG,
        make_image_config(blockedRegistries=["quay.io", "bad.example.com", "bad.example.com"]),
    )

    _synchronizer(store).sync("cluster")

    files = _files(store, MASTER_KEY)
    registries = _registries(files[REGISTRIES_CONFIG_PATH])
    assert registries["bad.example.com"]["blocked"] is True
    assert "quay.io" not in registries
    policy = json.loads(files[POLICY_CONFIG_PATH])
    assert policy["transports"]["docker"] == {"bad.example.com": [{"type": "reject"}]}


def test_allowed_registries_reject_by_default(store: FakeStore) -> None:
    store.seed(IMAGE_CONFIG, make_image_config(allowedRegistries=["quay.io", "registry.example"]))

    _synchronizer(store).sync("cluster")

    files = _files(store, WORKER_KEY)
    assert set(files) == {POLICY_CONFIG_PATH}
    policy = json.loads(files[POLICY_CONFIG_PATH])
    assert policy["default"] == [{"type": "reject"}]
    assert set(policy["transports"]["docker"]) == {"quay.io", "registry.example"}


def test_allowed_and_blocked_together_fail(store: FakeStore) -> None:
    store.seed(
        IMAGE_CONFIG,
        make_image_config(allowedRegistries=["quay.io"], blockedRegistries=["bad.example.com"]),
    )

    with pytest.raises(SyncError, match="only one of AllowedRegistries or BlockedRegistries"):
        _synchronizer(store).sync("cluster")

    assert store.names(MACHINE_CONFIG) == []


def test_search_registries_get_a_dropin(store: FakeStore) -> None:
    store.seed(
        IMAGE_CONFIG,
        make_image_config(containerRuntimeSearchRegistries=["search.example.com"]),
    )

    _synchronizer(store).sync("cluster")

    files = _files(store, WORKER_KEY)
    assert set(files) == {SEARCH_REGISTRIES_DROPIN_PATH}
    dropin = tomlkit.parse(files[SEARCH_REGISTRIES_DROPIN_PATH].decode())
    assert dropin["unqualified-search-registries"] == ["search.example.com"]


def test_content_source_policies_add_digest_mirrors(store: FakeStore) -> None:
    store.seed(IMAGE_CONFIG, make_image_config())
    store.seed(
        IMAGE_CONTENT_SOURCE_POLICY,
        {
            "metadata": {"name": "mirrors"},
            "spec": {
                "repositoryDigestMirrors": [
                    {
                        "source": "quay.io/example/release",
                        "mirrors": ["mirror.example.com/release"],
                    }
                ]
            },
        },
    )

    _synchronizer(store).sync("cluster")

    entry = _registries(_files(store, WORKER_KEY)[REGISTRIES_CONFIG_PATH])[
        "quay.io/example/release"
    ]
    assert entry["mirror-by-digest-only"] is True
    assert entry["mirror"] == [{"location": "mirror.example.com/release"}]


def test_unparseable_release_image_fails(store: FakeStore) -> None:
    store.seed(CLUSTER_VERSION, make_cluster_version(image=""))
    store.seed(IMAGE_CONFIG, make_image_config(blockedRegistries=["bad.example.com"]))

    with pytest.raises(ReferenceParseError):
        _synchronizer(store).sync("cluster")

    assert store.writes == []


def test_missing_image_config_is_a_no_op(store: FakeStore) -> None:
    _synchronizer(store).sync("cluster")

    assert store.writes == []


def test_missing_cluster_version_is_a_no_op(store: FakeStore) -> None:
    del store.objects[(CLUSTER_VERSION.plural, "version")]
    store.seed(IMAGE_CONFIG, make_image_config(insecureRegistries=["insecure.example.com"]))

    _synchronizer(store).sync("cluster")

    assert store.writes == []


def test_missing_controller_config_is_retried(store: FakeStore) -> None:
    del store.objects[(CONTROLLER_CONFIG.plural, "machine-config-controller")]
    store.seed(IMAGE_CONFIG, make_image_config(insecureRegistries=["insecure.example.com"]))

    with pytest.raises(SyncError, match="ControllerConfig"):
        _synchronizer(store).sync("cluster")


def test_store_errors_become_sync_errors(store: FakeStore) -> None:
    store.seed(IMAGE_CONFIG, make_image_config(insecureRegistries=["insecure.example.com"]))
    store.fail("create", MACHINE_CONFIG, MASTER_KEY, 500)

    with pytest.raises(SyncError, match=f"could not Create/Update MachineConfig {MASTER_KEY}"):
        _synchronizer(store).sync("cluster")


@pytest.mark.parametrize(
    ("reference", "expected"),
    [
        ("busybox", ImageReference("docker.io", "library/busybox")),
        ("org/app:1.0", ImageReference("docker.io", "org/app", tag="1.0")),
        ("quay.io/example/release:4.14", ImageReference("quay.io", "example/release", "4.14")),
        (
            "localhost:5000/app@sha256:abcdef",
            ImageReference("localhost:5000", "app", digest="sha256:abcdef"),
        ),
        ("localhost/app", ImageReference("localhost", "app")),
    ],
)
def test_parse_image_reference(reference: str, expected: ImageReference) -> None:
    assert parse_image_reference(reference) == expected


@pytest.mark.parametrize("reference", ["", "Quay.io/UPPER/Case", "quay.io/app:", "a//b"])
def test_parse_image_reference_rejects_malformed(reference: str) -> None:
    with pytest.raises(ReferenceParseError):
        parse_image_reference(reference)


@pytest.mark.parametrize(
    ("scope", "covered"),
    [
        ("quay.io", True),
        ("quay.io/example", True),
        ("quay.io/example/release", True),
        ("quay.io/ex", False),
        ("*.quay.io", False),
        ("docker.io", False),
    ],
)
def test_scope_covers(scope: str, covered: bool) -> None:
    reference = parse_image_reference("quay.io/example/release@sha256:abc")
    assert scope_covers(scope, reference) is covered


def test_wildcard_scope_covers_subdomains() -> None:
    reference = parse_image_reference("registry.example.com:5000/app")
    assert scope_covers("*.example.com", reference)
    assert not scope_covers("*.other.com", reference)


def test_is_valid_scope() -> None:
    assert is_valid_scope("quay.io")
    assert is_valid_scope("quay.io/org")
    assert is_valid_scope("*.example.com")
    assert not is_valid_scope("*example.com")
    assert not is_valid_scope("quay.io/ORG")


def test_valid_blocked_registries_reports_dropped_entries() -> None:
    sources = RegistrySources(
        blocked=("quay.io/example", "*bad", "ok.example.com", "ok.example.com")
    )

    blocked, warnings = valid_blocked_registries("quay.io/example/release@sha256:abc", sources)

    assert blocked == ["ok.example.com"]
    assert len(warnings) == 2
    assert "release payload" in warnings[0]
    assert "invalid entry" in warnings[1]
