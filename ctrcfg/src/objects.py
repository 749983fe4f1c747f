from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from kubernetes.utils import parse_quantity

from ctrcfg.src.errors import ValidationError

CONDITION_SUCCESS = "Success"
CONDITION_FAILURE = "Failure"

VALID_LOG_LEVELS = ("error", "fatal", "panic", "warn", "info", "debug", "trace")
MIN_PIDS_LIMIT = 20
MIN_LOG_SIZE_BYTES = 8192


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.setdefault("metadata", {})


def name_of(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name") or ""


def annotations_of(obj: dict[str, Any]) -> dict[str, str]:
    return dict((obj.get("metadata") or {}).get("annotations") or {})


def finalizers_of(obj: dict[str, Any]) -> list[str]:
    return list((obj.get("metadata") or {}).get("finalizers") or [])


def is_being_deleted(obj: dict[str, Any]) -> bool:
    return bool((obj.get("metadata") or {}).get("deletionTimestamp"))


def _quantity(raw: Any, field: str) -> Decimal:
    if raw in (None, "", 0):
        return Decimal(0)
    try:
        return parse_quantity(raw)
    except (ValueError, InvalidOperation) as exc:
        raise ValidationError(f"invalid {field} {raw!r}: {exc}") from exc


@dataclass(frozen=True)
class RuntimeConfigSpec:
    """Parsed ``spec.containerRuntimeConfig`` of a ContainerRuntimeConfig.

    Quantities keep their original string form (written verbatim into
    ``storage.conf``) next to the parsed byte value.
    """

    log_level: str = ""
    pids_limit: int | None = None
    log_size_max: str = ""
    log_size_max_bytes: int = 0
    overlay_size: str = ""
    overlay_size_bytes: int = 0

    @classmethod
    def from_object(cls, cfg: dict[str, Any]) -> RuntimeConfigSpec:
        raw = (cfg.get("spec") or {}).get("containerRuntimeConfig") or {}
        if not isinstance(raw, dict):
            raise ValidationError("containerRuntimeConfig is not valid")

        pids_limit = raw.get("pidsLimit")
        if pids_limit is not None and (
            isinstance(pids_limit, bool) or not isinstance(pids_limit, int)
        ):
            raise ValidationError(f"invalid PidsLimit {pids_limit!r}, must be an integer")

        log_size_max = str(raw.get("logSizeMax") or "")
        overlay_size = str(raw.get("overlaySize") or "")
        return cls(
            log_level=str(raw.get("logLevel") or ""),
            pids_limit=pids_limit,
            log_size_max=log_size_max,
            log_size_max_bytes=int(_quantity(log_size_max, "LogSizeMax")),
            overlay_size=overlay_size,
            overlay_size_bytes=int(_quantity(overlay_size, "OverlaySize")),
        )

    @property
    def has_crio_overrides(self) -> bool:
        return bool(self.log_level) or self.pids_limit is not None or self.log_size_max_bytes != 0


def validate_runtime_config(cfg: dict[str, Any]) -> RuntimeConfigSpec:
    """Parse and validate a ContainerRuntimeConfig spec.

    Raises :class:`ValidationError` describing the first invalid field.
    """
    spec = RuntimeConfigSpec.from_object(cfg)
    if spec.pids_limit is not None and spec.pids_limit < MIN_PIDS_LIMIT:
        raise ValidationError(
            f"invalid PidsLimit {spec.pids_limit}, must be at least {MIN_PIDS_LIMIT}"
        )
    if spec.log_size_max_bytes < 0:
        raise ValidationError(f"invalid LogSizeMax {spec.log_size_max!r}, cannot be negative")
    if 0 < spec.log_size_max_bytes <= MIN_LOG_SIZE_BYTES:
        raise ValidationError(
            f"invalid LogSizeMax {spec.log_size_max!r}, cannot be less than 8kB"
        )
    if spec.overlay_size_bytes < 0:
        raise ValidationError(f"invalid OverlaySize {spec.overlay_size!r}, cannot be negative")
    if spec.log_level and spec.log_level not in VALID_LOG_LEVELS:
        raise ValidationError(
            f"invalid LogLevel {spec.log_level!r}, must be one of "
            "error, fatal, panic, warn, info, debug, or trace"
        )
    return spec


@dataclass(frozen=True)
class RegistrySources:
    """``spec.registrySources`` of the cluster-wide Image config."""

    insecure: tuple[str, ...] = ()
    allowed: tuple[str, ...] = ()
    blocked: tuple[str, ...] = ()
    search: tuple[str, ...] = ()

    @classmethod
    def from_object(cls, image: dict[str, Any] | None) -> RegistrySources:
        raw = ((image or {}).get("spec") or {}).get("registrySources") or {}
        return cls(
            insecure=tuple(raw.get("insecureRegistries") or ()),
            allowed=tuple(raw.get("allowedRegistries") or ()),
            blocked=tuple(raw.get("blockedRegistries") or ()),
            search=tuple(raw.get("containerRuntimeSearchRegistries") or ()),
        )


def new_condition(error: BaseException | None, message: str | None = None) -> dict[str, str]:
    """Build a status condition for the outcome of a sync pass.

    Failures carry ``Error: <message>``; *message* overrides the exception
    text when given.
    """
    if error is None:
        return {
            "type": CONDITION_SUCCESS,
            "status": "True",
            "lastTransitionTime": utc_now_rfc3339(),
            "message": "Success",
        }
    return {
        "type": CONDITION_FAILURE,
        "status": "False",
        "lastTransitionTime": utc_now_rfc3339(),
        "message": f"Error: {message or error}",
    }


def record_condition(status: dict[str, Any], condition: dict[str, str]) -> None:
    """Append *condition*, or overwrite the last one if its message is identical.

    Keeps the list from growing while the same failure repeats.
    """
    conditions = status.setdefault("conditions", [])
    if conditions and conditions[-1].get("message") == condition["message"]:
        conditions[-1] = condition
    else:
        conditions.append(condition)


def last_condition_type(cfg: dict[str, Any]) -> str | None:
    conditions = (cfg.get("status") or {}).get("conditions") or []
    if not conditions:
        return None
    return conditions[-1].get("type")
