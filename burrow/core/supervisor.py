"""Service supervisor — one event loop per service, restarts with backoff.

All state changes happen on a single loop thread that consumes a queue of
events. Backend listeners, process watchers and restart timers only post
events, so two reconfigurations can never interleave and a stop request
queued during a reconfiguration is handled after it completes.

States and transitions are defined in ``burrow.models.service``:

- Stopped -> Starting -> Running
- Running + config change -> Reconfiguring -> Running (render failed or
  output unchanged) or -> Starting -> Running (graceful restart)
- Running + unexpected exit -> Failed -> Starting after backoff; exhausting
  the attempts ends in Stopped with ``fatal_error`` set
- any live state + explicit stop -> Stopped
"""

from __future__ import annotations

import json
import logging
import os
import queue
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from burrow.config import BurrowSettings
from burrow.core.backends import ConfigBackend, select_backend
from burrow.core.effective_config import load_defaults, merge_config
from burrow.core.events import (
    EVENT_SERVICE_FATAL,
    EVENT_SERVICE_RESTART,
    EVENT_SERVICE_START,
    EventRecorder,
)
from burrow.core.kv import KeyValueClient, connect
from burrow.core.layout import FsLayout
from burrow.core.pointer import CurrentPointer
from burrow.core.renderer import LiveConfigDirectory, TemplateRenderer, load_templates
from burrow.core.store import PackageStore
from burrow.errors import (
    InvalidTransitionError,
    PointerError,
    ProcessExitError,
    RenderError,
)
from burrow.models.config import ConfigSource, EffectiveConfig
from burrow.models.events import (
    ConfigChanged,
    EventKind,
    ProcessExited,
    RestartDue,
    StartRequested,
    StopRequested,
    SupervisorEvent,
)
from burrow.models.package import StoreEntry
from burrow.models.service import (
    VALID_TRANSITIONS,
    ServiceSpec,
    ServiceState,
    StateTransition,
    SupervisorPolicy,
    SupervisorStatus,
)

logger = logging.getLogger(__name__)

_WATCH_INTERVAL = 0.05


# ---------------------------------------------------------------------------
# Process protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ProcessHandle(Protocol):
    """The subset of ``subprocess.Popen`` the supervisor relies on."""

    pid: int

    def poll(self) -> int | None: ...

    def wait(self, timeout: float | None = None) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ProcessLauncher(Protocol):
    def launch(
        self, command: list[str], *, cwd: Path, env: dict[str, str]
    ) -> ProcessHandle: ...


class SubprocessLauncher:
    """Starts real OS processes in their own session."""

    def launch(
        self, command: list[str], *, cwd: Path, env: dict[str, str]
    ) -> ProcessHandle:
        return subprocess.Popen(command, cwd=cwd, env=env, start_new_session=True)


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class ServiceSupervisor:
    """Owns one service's process, EffectiveConfig and rendered files.

    Parameters
    ----------
    spec:
        Service name and optional command/env.
    layout:
        On-disk layout; determines the config, data and pointer paths.
    pointer:
        The service's current pointer (read only).
    backend:
        Configuration backend variant selected for this service.
    renderer:
        Template renderer. Non-strict by default.
    launcher:
        Starts processes. Real subprocesses by default.
    policy:
        Restart, backoff and shutdown tunables.
    recorder:
        Optional usage event recorder.
    """

    def __init__(
        self,
        spec: ServiceSpec,
        *,
        layout: FsLayout,
        pointer: CurrentPointer,
        backend: ConfigBackend,
        renderer: TemplateRenderer | None = None,
        launcher: ProcessLauncher | None = None,
        policy: SupervisorPolicy | None = None,
        recorder: EventRecorder | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.spec = spec
        self.policy = policy or SupervisorPolicy()
        self._layout = layout
        self._pointer = pointer
        self._backend = backend
        self._renderer = renderer or TemplateRenderer(strict=self.policy.strict_render)
        self._launcher = launcher or SubprocessLauncher()
        self._recorder = recorder
        self._base_env = dict(os.environ if environ is None else environ)
        self._live = LiveConfigDirectory(
            layout.config_dir(spec.name), layout.config_generations_dir(spec.name)
        )

        self._events: queue.Queue[SupervisorEvent] = queue.Queue()
        self._cond = threading.Condition()
        self._state = ServiceState.STOPPED
        self._history: list[StateTransition] = []
        self._fatal: str | None = None
        self._attempts = 0
        self._config = EffectiveConfig()
        self._overrides: dict[str, str] = {}
        self._revision = 0

        self._process: ProcessHandle | None = None
        self._generation = 0
        self._started_at = 0.0
        self._restart_timer: threading.Timer | None = None
        self._loop_thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        spec: ServiceSpec,
        settings: BurrowSettings,
        *,
        launcher: ProcessLauncher | None = None,
        environ: Mapping[str, str] | None = None,
        client_factory: Callable[[str], KeyValueClient] = connect,
    ) -> ServiceSupervisor:
        """Build a supervisor with the backend selected from *settings*."""
        layout = FsLayout(settings.root)
        store = PackageStore(layout.store_dir)
        backend = select_backend(
            spec.name,
            settings.config_target,
            environ=environ,
            client_factory=client_factory,
            poll_interval_seconds=settings.poll_interval_seconds,
            retry_seconds=settings.backend_retry_seconds,
        )
        return cls(
            spec,
            layout=layout,
            pointer=CurrentPointer(layout.current_link(spec.name), store),
            backend=backend,
            launcher=launcher,
            policy=SupervisorPolicy.from_settings(settings),
            recorder=EventRecorder(layout.analytics_dir, enabled=settings.analytics_enabled),
            environ=environ,
        )

    # ------------------------------------------------------------------
    # Public API (any thread)
    # ------------------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        with self._cond:
            return self._state

    @property
    def effective_config(self) -> EffectiveConfig:
        with self._cond:
            return self._config

    def status(self) -> SupervisorStatus:
        with self._cond:
            return self._status_locked()

    def start(self) -> None:
        """Start the loop and the backend listener, then request a start."""
        if self._loop_thread is None or not self._loop_thread.is_alive():
            self._overrides = self._backend.snapshot()
            self._loop_thread = threading.Thread(
                target=self._loop, name=f"burrow-supervisor-{self.spec.name}", daemon=True
            )
            self._loop_thread.start()
            self._backend.start(self._on_snapshot)
        self.post(StartRequested())

    def stop(self, timeout: float | None = None) -> SupervisorStatus:
        """Request a stop and wait for the loop to finish."""
        self.post(StopRequested())
        thread = self._loop_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return self.status()

    def post(self, event: SupervisorEvent) -> None:
        self._events.put(event)

    def wait_until(
        self, predicate: Callable[[SupervisorStatus], bool], timeout: float | None = None
    ) -> bool:
        """Block until *predicate* holds for the status, or *timeout* passes."""
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self._status_locked()), timeout)

    def wait_for_state(self, state: ServiceState, timeout: float | None = None) -> bool:
        return self.wait_until(lambda s: s.state == state, timeout)

    def raise_if_fatal(self) -> None:
        """Raise ``ProcessExitError`` once restart attempts are exhausted."""
        with self._cond:
            fatal = self._fatal
        if fatal is not None:
            raise ProcessExitError(fatal)

    def _on_snapshot(self, snapshot: dict[str, str]) -> None:
        self.post(ConfigChanged(snapshot=snapshot, origin=self._backend.kind.value))

    # ------------------------------------------------------------------
    # Loop (loop thread only below this line)
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        handlers: dict[EventKind, Callable[[Any], bool]] = {
            EventKind.START_REQUESTED: self._on_start,
            EventKind.STOP_REQUESTED: self._on_stop,
            EventKind.CONFIG_CHANGED: self._on_config_changed,
            EventKind.PROCESS_EXITED: self._on_process_exited,
            EventKind.RESTART_DUE: self._on_restart_due,
        }
        while True:
            event = self._events.get()
            try:
                if handlers[event.kind](event):
                    return
            except Exception:
                logger.exception(
                    "Supervisor %s failed handling %s", self.spec.name, event.kind.value
                )

    def _status_locked(self) -> SupervisorStatus:
        return SupervisorStatus(
            service=self.spec.name,
            state=self._state,
            pid=self._process.pid if self._process is not None else None,
            restart_attempts=self._attempts,
            fatal_error=self._fatal,
            config_revision=self._config.revision,
            history=list(self._history),
        )

    def _transition(self, target: ServiceState, reason: str = "") -> None:
        with self._cond:
            current = self._state
            if target not in VALID_TRANSITIONS.get(current, set()):
                raise InvalidTransitionError(
                    f"Cannot transition {self.spec.name} from {current.value} "
                    f"to {target.value}"
                )
            self._state = target
            self._history.append(
                StateTransition(from_state=current, to_state=target, reason=reason)
            )
            self._cond.notify_all()
        logger.info(
            "Service %s: %s -> %s%s",
            self.spec.name,
            current.value,
            target.value,
            f" ({reason})" if reason else "",
        )

    # -- handlers -------------------------------------------------------

    def _on_start(self, event: StartRequested) -> bool:
        if self._state != ServiceState.STOPPED:
            logger.debug("Service %s already %s", self.spec.name, self._state.value)
            return False
        with self._cond:
            self._fatal = None
            self._attempts = 0
        self._transition(ServiceState.STARTING, "start requested")
        self._spawn()
        return False

    def _on_stop(self, event: StopRequested) -> bool:
        self._cancel_restart()
        if self._state in (ServiceState.RUNNING, ServiceState.STARTING):
            self._stop_process()
            self._transition(ServiceState.STOPPED, "stop requested")
        elif self._state == ServiceState.FAILED:
            self._transition(ServiceState.STOPPED, "stop requested")
        self._backend.stop()
        return True

    def _on_config_changed(self, event: ConfigChanged) -> bool:
        self._overrides = dict(event.snapshot)
        self._revision += 1
        if self._state != ServiceState.RUNNING:
            logger.debug(
                "Service %s is %s; new config applies at next start",
                self.spec.name,
                self._state.value,
            )
            return False

        self._transition(ServiceState.RECONFIGURING, f"config change from {event.origin}")
        try:
            changed = self._render(self._pointer.read())
        except (RenderError, PointerError, OSError) as exc:
            logger.error(
                "Service %s: reconfiguration failed, keeping previous config: %s",
                self.spec.name,
                exc,
            )
            self._transition(ServiceState.RUNNING, "render failed")
            return False
        if not changed:
            self._transition(ServiceState.RUNNING, "rendered config unchanged")
            return False

        self._stop_process()
        self._transition(ServiceState.STARTING, "restart for new config")
        self._spawn()
        return False

    def _on_process_exited(self, event: ProcessExited) -> bool:
        if event.generation != self._generation or self._state != ServiceState.RUNNING:
            logger.debug("Ignoring exit of superseded process %d", event.pid)
            return False
        uptime = time.monotonic() - self._started_at
        with self._cond:
            self._process = None
            if uptime >= self.policy.reset_after_seconds:
                self._attempts = 0
        self._fail(f"process {event.pid} exited with status {event.returncode}")
        return False

    def _on_restart_due(self, event: RestartDue) -> bool:
        if self._state != ServiceState.FAILED or event.attempt != self._attempts:
            return False
        self._restart_timer = None
        self._transition(ServiceState.STARTING, f"restart attempt {event.attempt}")
        if self._recorder is not None:
            self._recorder.record(
                EVENT_SERVICE_RESTART, service=self.spec.name, attempt=str(event.attempt)
            )
        self._spawn()
        return False

    # -- helpers --------------------------------------------------------

    def _fail(self, reason: str) -> None:
        self._transition(ServiceState.FAILED, reason)
        with self._cond:
            self._attempts += 1
            attempt = self._attempts
        if attempt > self.policy.max_restart_attempts:
            fatal = (
                f"Service {self.spec.name} gave up after "
                f"{self.policy.max_restart_attempts} restart attempts: {reason}"
            )
            logger.error(fatal)
            if self._recorder is not None:
                self._recorder.record(EVENT_SERVICE_FATAL, service=self.spec.name)
            with self._cond:
                self._fatal = fatal
            self._transition(ServiceState.STOPPED, "restart attempts exhausted")
            return
        delay = self.policy.backoff_delay(attempt)
        logger.warning(
            "Service %s failed (%s); restart %d/%d in %.1fs",
            self.spec.name,
            reason,
            attempt,
            self.policy.max_restart_attempts,
            delay,
        )
        timer = threading.Timer(delay, self.post, args=(RestartDue(attempt=attempt),))
        timer.daemon = True
        self._restart_timer = timer
        timer.start()

    def _cancel_restart(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None

    def _render(self, entry: StoreEntry) -> bool:
        """Recompute EffectiveConfig and publish rendered files.

        Returns whether the live files changed. On failure nothing changes.
        """
        source = (
            ConfigSource.ENVIRONMENT
            if self._backend.source == ConfigSource.ENVIRONMENT
            else ConfigSource.BACKEND
        )
        config = merge_config(
            load_defaults(entry.path),
            self._overrides,
            source=source,
            revision=self._revision,
        )
        rendered = self._renderer.render_all(
            load_templates(entry.path), config, extra=self._template_context(entry)
        )
        changed = self._live.swap_in(rendered)
        with self._cond:
            self._config = config
        self._publish(config)
        return changed

    def _template_context(self, entry: StoreEntry) -> dict[str, Any]:
        return {
            "pkg": {
                "name": entry.ident.name,
                "version": entry.ident.version,
                "release": entry.ident.release,
                "identity": entry.ident.identity,
                "path": str(entry.path),
            },
            "svc": {
                "name": self.spec.name,
                "config_dir": str(self._layout.config_dir(self.spec.name)),
                "data_dir": str(self._layout.data_dir(self.spec.name)),
            },
        }

    def _publish(self, config: EffectiveConfig) -> None:
        """Write the EffectiveConfig where read-only consumers can find it."""
        dest = self._layout.effective_config_file(self.spec.name)
        dest.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "service": self.spec.name,
            "revision": config.revision,
            "source": config.source.value,
            "values": config.values,
        }
        fd, tmp = tempfile.mkstemp(dir=dest.parent, prefix=".effective-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, default=str)
            os.replace(tmp, dest)
        except OSError as exc:
            Path(tmp).unlink(missing_ok=True)
            logger.warning("Could not publish effective config for %s: %s", self.spec.name, exc)

    def _command(self, entry: StoreEntry) -> list[str]:
        if self.spec.command:
            return list(self.spec.command)
        run_hook = entry.path / "hooks" / "run"
        if not run_hook.is_file():
            raise FileNotFoundError(f"{entry.ident} has no hooks/run and no command was given")
        return [str(run_hook)]

    def _process_env(self, entry: StoreEntry) -> dict[str, str]:
        env = dict(self._base_env)
        env.update(self.spec.env)
        env.update({
            "BURROW_SERVICE": self.spec.name,
            "BURROW_PKG_PATH": str(entry.path),
            "BURROW_CONFIG_DIR": str(self._layout.config_dir(self.spec.name)),
            "BURROW_DATA_DIR": str(self._layout.data_dir(self.spec.name)),
        })
        return env

    def _spawn(self) -> None:
        """Start the process. Must be called in STARTING."""
        try:
            entry = self._pointer.read()
            self._layout.ensure_service(self.spec.name)
            try:
                self._render(entry)
            except RenderError as exc:
                if self._live.current_generation() is None:
                    raise
                logger.error(
                    "Service %s: render failed, starting on previous config: %s",
                    self.spec.name,
                    exc,
                )
            handle = self._launcher.launch(
                self._command(entry),
                cwd=self._layout.data_dir(self.spec.name),
                env=self._process_env(entry),
            )
        except (PointerError, RenderError, OSError) as exc:
            logger.error("Service %s could not start: %s", self.spec.name, exc)
            self._fail(f"start failed: {exc}")
            return

        with self._cond:
            self._generation += 1
            generation = self._generation
            self._process = handle
            self._started_at = time.monotonic()
        threading.Thread(
            target=self._watch,
            args=(generation, handle),
            name=f"burrow-watch-{self.spec.name}-{generation}",
            daemon=True,
        ).start()
        self._transition(ServiceState.RUNNING, f"pid {handle.pid}")
        if self._recorder is not None:
            self._recorder.record(EVENT_SERVICE_START, service=self.spec.name)

    def _watch(self, generation: int, handle: ProcessHandle) -> None:
        while generation == self._generation:
            returncode = handle.poll()
            if returncode is not None:
                self.post(
                    ProcessExited(generation=generation, pid=handle.pid, returncode=returncode)
                )
                return
            time.sleep(_WATCH_INTERVAL)

    def _stop_process(self) -> None:
        """SIGTERM, wait out the grace period, then SIGKILL."""
        with self._cond:
            handle, self._process = self._process, None
            # Exits of this process are now expected; the watcher stands down.
            self._generation += 1
        if handle is None or handle.poll() is not None:
            return
        handle.terminate()
        try:
            handle.wait(timeout=self.policy.grace_timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Service %s pid %d ignored SIGTERM for %.1fs; killing",
                self.spec.name,
                handle.pid,
                self.policy.grace_timeout_seconds,
            )
            handle.kill()
            handle.wait()
