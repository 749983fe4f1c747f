from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import CoordinationV1Api

from ctrcfg.src.config import Settings, load_settings
from ctrcfg.src.controller import ContainerRuntimeConfigController, build_controller
from ctrcfg.src.health import start_health_server
from ctrcfg.src.kube import build_clients, load_kube_configuration
from ctrcfg.src.leader import LeaseLeaderElector, default_identity
from ctrcfg.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        # Registry credentials embedded in image references or mirror URLs.
        re.compile(r"(?i)(\b[a-z][a-z0-9+.-]*://[^/\s:@]+:)([^@\s/]+)(@)"),
        r"\1[REDACTED]\3",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def run_with_leader_election(
    controller: ContainerRuntimeConfigController,
    settings: Settings,
    shutdown_event: threading.Event,
    leader_ready: threading.Event,
    coordination_api: CoordinationV1Api,
) -> None:
    """Run *controller* only while this replica holds the lease."""
    elector = LeaseLeaderElector.from_settings(
        coordination_api,
        settings,
        identity=os.getenv("LEADER_ELECTION_IDENTITY", default_identity()),
    )
    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error(
                    "Refusing to start the controller while the previous "
                    "controller thread is still running"
                )
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            leader_ready.set()
            run_stop = controller_stop

            def _run_controller() -> None:
                unexpected_exit = False
                try:
                    controller.run_forever(shutdown_event=run_stop)
                    unexpected_exit = not run_stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error(
                            "Controller thread exited without a stop signal; terminating process"
                        )
                except Exception:
                    unexpected_exit = True
                    LOGGER.exception("Controller thread crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="controller", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller.request_stop()
            controller_stop.set()
            if controller_thread is None:
                return

            controller_thread.join(timeout=settings.controller_stop_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss during leadership "
                    "handoff; forcing process shutdown",
                    settings.controller_stop_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Controller entrypoint: configure logging, elect a leader, and run the synchronizers."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    settings = load_settings()
    METRICS.build_info.info(
        {"version": settings.build_version, "revision": os.getenv("GIT_SHA", "unknown")}
    )

    load_kube_configuration()
    core_api, custom_api = build_clients()
    controller = build_controller(settings, core_api=core_api, custom_api=custom_api)

    leader_ready = threading.Event() if settings.leader_election_enabled else None
    health_server = start_health_server(
        synced=controller.ready, port=settings.health_port, leader=leader_ready
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_ready is not None:
        run_with_leader_election(
            controller, settings, shutdown_event, leader_ready, CoordinationV1Api()
        )
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
