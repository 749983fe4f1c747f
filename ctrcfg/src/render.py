from __future__ import annotations

import base64
import json
import logging
import string
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any
from urllib.parse import unquote_to_bytes

import tomlkit
import yaml
from tomlkit.exceptions import TOMLKitError

from ctrcfg.src.errors import SyncError

LOGGER = logging.getLogger(__name__)

IGNITION_VERSION = "3.2.0"
DEFAULT_FILE_MODE = 0o644

STORAGE_CONFIG_PATH = "/etc/containers/storage.conf"
REGISTRIES_CONFIG_PATH = "/etc/containers/registries.conf"
POLICY_CONFIG_PATH = "/etc/containers/policy.json"
SEARCH_REGISTRIES_DROPIN_PATH = "/etc/containers/registries.conf.d/01-image-searchRegistries.conf"
CRIO_DROPIN_LOG_LEVEL_PATH = "/etc/crio/crio.conf.d/01-ctrcfg-logLevel"
CRIO_DROPIN_PIDS_LIMIT_PATH = "/etc/crio/crio.conf.d/01-ctrcfg-pidsLimit"
CRIO_DROPIN_LOG_SIZE_MAX_PATH = "/etc/crio/crio.conf.d/01-ctrcfg-logSizeMax"
CRIO_DROPIN_SECCOMP_DEFAULT_PATH = "/etc/crio/crio.conf.d/01-mc-seccompUseDefault"

GeneratedFile = tuple[str, bytes | None]


class TemplateRenderer:
    """Renders the default config files for a pool role from YAML templates.

    Layout::

        <templates_dir>/common/files/*.yaml   applied to every role
        <templates_dir>/<role>/files/*.yaml   overrides ``common`` by path

    Each template is a mapping with ``path``, optional ``mode`` and
    ``contents.inline``.  ``${name}`` placeholders in the inline contents are
    filled from the scalar fields of the ControllerConfig ``spec``.
    """

    def __init__(self, templates_dir: str | Path) -> None:
        self.templates_dir = Path(templates_dir)

    def _load_dir(self, directory: Path) -> list[dict[str, Any]]:
        if not directory.is_dir():
            return []
        templates = []
        for path in sorted(directory.glob("*.yaml")):
            with path.open(encoding="utf-8") as handle:
                document = yaml.safe_load(handle)
            if not isinstance(document, dict) or not document.get("path"):
                raise SyncError(f"template {path} must be a mapping with a 'path' key")
            templates.append(document)
        return templates

    def render_defaults(
        self, role: str, controller_config: Mapping[str, Any]
    ) -> dict[str, dict[str, Any]]:
        """Return Ignition file entries keyed by path for *role*."""
        variables = {
            key: str(value)
            for key, value in (controller_config.get("spec") or {}).items()
            if isinstance(value, (str, int, float, bool))
        }
        templates: dict[str, dict[str, Any]] = {}
        directories = (self.templates_dir / "common" / "files", self.templates_dir / role / "files")
        for directory in directories:
            for template in self._load_dir(directory):
                templates[template["path"]] = template

        rendered = {}
        for path, template in templates.items():
            inline = str((template.get("contents") or {}).get("inline") or "")
            data = string.Template(inline).safe_substitute(variables).encode("utf-8")
            rendered[path] = ignition_file(path, data, mode=template.get("mode", DEFAULT_FILE_MODE))
        return rendered


def encode_data_url(data: bytes) -> str:
    return "data:text/plain;charset=utf-8;base64," + base64.b64encode(data).decode("ascii")


def decode_data_url(source: str) -> bytes:
    """Decode an RFC 2397 ``data:`` URL into raw bytes."""
    if not source.startswith("data:") or "," not in source:
        raise ValueError("not a data URL")
    header, _, payload = source[len("data:"):].partition(",")
    if header.endswith(";base64"):
        return base64.b64decode(payload, validate=True)
    return unquote_to_bytes(payload)


def ignition_file(path: str, data: bytes, mode: int = DEFAULT_FILE_MODE) -> dict[str, Any]:
    return {
        "contents": {"source": encode_data_url(data)},
        "mode": mode,
        "overwrite": True,
        "path": path,
    }


def new_ignition(files: Iterable[GeneratedFile]) -> dict[str, Any]:
    """Build an Ignition config holding *files*; entries without data are skipped."""
    config: dict[str, Any] = {"ignition": {"version": IGNITION_VERSION}}
    entries = [ignition_file(path, data) for path, data in files if data is not None]
    if entries:
        config["storage"] = {"files": entries}
    return config


def encode_ignition(config: Mapping[str, Any] | None) -> bytes:
    """Canonical byte encoding used to compare rendered payloads."""
    return json.dumps(config or {}, sort_keys=True, separators=(",", ":")).encode("utf-8")


def ignition_files(config: Mapping[str, Any] | None) -> dict[str, bytes]:
    """Decode the file entries of an Ignition config into ``{path: data}``."""
    files = ((config or {}).get("storage") or {}).get("files") or []
    return {
        entry["path"]: decode_data_url((entry.get("contents") or {}).get("source") or "data:,")
        for entry in files
    }


def original_file_data(rendered: Mapping[str, dict[str, Any]], path: str) -> bytes:
    entry = rendered.get(path)
    if entry is None:
        raise SyncError(f"could not find {path} in the rendered default configs")
    source = (entry.get("contents") or {}).get("source")
    if not source:
        raise SyncError(f"original {path} is empty")
    try:
        return decode_data_url(source)
    except ValueError as exc:
        raise SyncError(f"could not decode original {path}: {exc}") from exc


def _toml_dumps(document: Mapping[str, Any]) -> bytes:
    return tomlkit.dumps(document).encode("utf-8")


def update_storage_config(data: bytes, overlay_size: str) -> bytes:
    """Set ``storage.options.size`` in a ``storage.conf`` document."""
    document = tomlkit.parse(data.decode("utf-8"))
    if "storage" not in document:
        document["storage"] = tomlkit.table()
    if "options" not in document["storage"]:
        document["storage"]["options"] = tomlkit.table()
    document["storage"]["options"]["size"] = overlay_size
    return _toml_dumps(document)


def merge_storage_config(rendered: Mapping[str, dict[str, Any]], overlay_size: str) -> bytes:
    """Decode the default ``storage.conf`` and apply the overlay size to it."""
    original = original_file_data(rendered, STORAGE_CONFIG_PATH)
    try:
        return update_storage_config(original, overlay_size)
    except (ValueError, TOMLKitError) as exc:
        raise SyncError(f"could not update storage config with new changes: {exc}") from exc


def _scope_key(scope: str) -> tuple[str, str]:
    if scope.startswith("*."):
        return "prefix", scope
    return "location", scope


def _find_or_add_registry(registries: Any, scope: str) -> Any:
    field_name, value = _scope_key(scope)
    for entry in registries:
        if entry.get(field_name) == value or entry.get("prefix") == value:
            return entry
    entry = tomlkit.table()
    entry[field_name] = value
    registries.append(entry)
    return registries[-1]


def update_registries_config(
    data: bytes,
    insecure: Sequence[str],
    blocked: Sequence[str],
    icsp_rules: Sequence[Mapping[str, Any]],
) -> bytes:
    """Apply insecure/blocked scopes and digest mirrors to a v2 ``registries.conf``."""
    document = tomlkit.parse(data.decode("utf-8"))
    if "registry" not in document:
        document["registry"] = tomlkit.aot()
    registries = document["registry"]

    mirrors: dict[str, list[str]] = {}
    for rule in sorted(icsp_rules, key=lambda r: (r.get("metadata") or {}).get("name") or ""):
        for digest_mirror in (rule.get("spec") or {}).get("repositoryDigestMirrors") or []:
            source = digest_mirror.get("source")
            if not source:
                continue
            known = mirrors.setdefault(source, [])
            for mirror in digest_mirror.get("mirrors") or []:
                if mirror not in known:
                    known.append(mirror)

    for source in sorted(mirrors):
        entry = _find_or_add_registry(registries, source)
        entry["mirror-by-digest-only"] = True
        mirror_tables = tomlkit.array()
        for mirror in mirrors[source]:
            mirror_table = tomlkit.inline_table()
            mirror_table["location"] = mirror
            if mirror in insecure:
                mirror_table["insecure"] = True
            mirror_tables.append(mirror_table)
        entry["mirror"] = mirror_tables
    for scope in sorted(set(insecure)):
        _find_or_add_registry(registries, scope)["insecure"] = True
    for scope in sorted(set(blocked)):
        _find_or_add_registry(registries, scope)["blocked"] = True
    return _toml_dumps(document)


def update_policy_json(data: bytes, blocked: Sequence[str], allowed: Sequence[str]) -> bytes:
    """Apply blocked or allowed registry scopes to a ``policy.json`` document."""
    if blocked and allowed:
        raise SyncError(
            "invalid images config: only one of AllowedRegistries or BlockedRegistries "
            "may be specified"
        )
    try:
        policy = json.loads(data.decode("utf-8"))
    except ValueError as exc:
        raise SyncError(f"could not parse original policy json: {exc}") from exc

    scopes: dict[str, list[dict[str, str]]] = {}
    if allowed:
        policy["default"] = [{"type": "reject"}]
        for scope in allowed:
            scopes[scope] = [{"type": "insecureAcceptAnything"}]
    for scope in blocked:
        scopes[scope] = [{"type": "reject"}]
    if scopes:
        transports = policy.setdefault("transports", {})
        transports["docker"] = scopes
        transports["atomic"] = scopes
    return json.dumps(policy, indent=2, sort_keys=True).encode("utf-8")


def _crio_runtime_dropin(key: str, value: Any) -> bytes:
    return _toml_dumps({"crio": {"runtime": {key: value}}})


def crio_dropin_files(
    log_level: str | None, pids_limit: int | None, log_size_max: int | None
) -> list[GeneratedFile]:
    files: list[GeneratedFile] = []
    if log_level:
        files.append((CRIO_DROPIN_LOG_LEVEL_PATH, _crio_runtime_dropin("log_level", log_level)))
    if pids_limit is not None:
        files.append((CRIO_DROPIN_PIDS_LIMIT_PATH, _crio_runtime_dropin("pids_limit", pids_limit)))
    if log_size_max:
        files.append(
            (CRIO_DROPIN_LOG_SIZE_MAX_PATH, _crio_runtime_dropin("log_size_max", log_size_max))
        )
    return files


def seccomp_use_default_files() -> list[GeneratedFile]:
    return [
        (
            CRIO_DROPIN_SECCOMP_DEFAULT_PATH,
            _crio_runtime_dropin("seccomp_use_default_when_empty", True),
        )
    ]


def search_registries_files(search_registries: Sequence[str]) -> list[GeneratedFile]:
    document = {"unqualified-search-registries": list(search_registries)}
    return [(SEARCH_REGISTRIES_DROPIN_PATH, _toml_dumps(document))]


def registries_ignition(
    renderer: TemplateRenderer,
    controller_config: Mapping[str, Any],
    role: str,
    insecure: Sequence[str] | None,
    blocked: Sequence[str] | None,
    allowed: Sequence[str] | None,
    search: Sequence[str] | None,
    icsp_rules: Sequence[Mapping[str, Any]],
) -> dict[str, Any]:
    """Render the registries/policy Ignition config for one pool role.

    ``registries.conf`` is only emitted when insecure, blocked or mirror rules
    are present and ``policy.json`` only when blocked or allowed lists are;
    otherwise the node keeps its default file.
    """
    rendered = renderer.render_defaults(role, controller_config)
    registries_toml: bytes | None = None
    policy_json: bytes | None = None

    if insecure or blocked or icsp_rules:
        original = original_file_data(rendered, REGISTRIES_CONFIG_PATH)
        try:
            registries_toml = update_registries_config(
                original, insecure or [], blocked or [], icsp_rules
            )
        except (ValueError, TOMLKitError) as exc:
            raise SyncError(f"could not update registries config with new changes: {exc}") from exc
    if blocked or allowed:
        original = original_file_data(rendered, POLICY_CONFIG_PATH)
        policy_json = update_policy_json(original, blocked or [], allowed or [])

    files: list[GeneratedFile] = [
        (REGISTRIES_CONFIG_PATH, registries_toml),
        (POLICY_CONFIG_PATH, policy_json),
    ]
    if search:
        files.extend(search_registries_files(search))
    return new_ignition(files)
