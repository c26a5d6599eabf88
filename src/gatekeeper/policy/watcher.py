"""
Hot-reload watcher for the policy directory.

A watchdog observer translates filesystem notifications into WatchEvents
and puts them on a queue. A single worker thread drains that queue, so
events are handled strictly one after another and reloads never race.

Debouncing:
    No event acts immediately. Each one arms a per-source deadline
    `debounce_seconds` in the future; further events for the same source
    push the deadline out. Editors that write a file in several chunks
    therefore cause a single reload of the finished file.

Settling:
    When a deadline passes, the file on disk decides the outcome: if it
    exists the source is reloaded, otherwise its store entry is removed.
    Observers do not deliver events in time order (a rename-to-backup
    followed by a fresh write can arrive as "created" then "moved"), so
    the event kind alone never removes an entry.

Failure handling:
    Errors raised while handling an event are logged and the loop keeps
    going. If the observer thread dies, the notification channel is gone:
    the worker logs a warning and exits, and hot-reload is off until the
    process restarts.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from gatekeeper.errors import WatchError
from gatekeeper.policy.loader import is_policy_file, source_id_for

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.1

# Upper bound on how long the worker blocks before re-checking the observer
_IDLE_POLL_SECONDS = 0.5

_STOP = object()


@dataclass(frozen=True)
class WatchEvent:
    """
    A filesystem change relevant to the policy store.

    Attributes:
        kind: "changed" for create/modify, "removed" for delete
        source_id: Absolute path of the affected file
    """

    kind: Literal["changed", "removed"]
    source_id: str


class _PolicyEventHandler(FileSystemEventHandler):
    """Forwards watchdog events for policy files to the watcher queue."""

    def __init__(self, submit: Callable[[WatchEvent], None]) -> None:
        super().__init__()
        self._submit = submit

    def on_created(self, event: FileSystemEvent) -> None:
        self._changed(event.src_path, event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._changed(event.src_path, event.is_directory)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit("removed", event.src_path, event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        # A rename is a removal of the old name and a write of the new one
        self._emit("removed", event.src_path, event.is_directory)
        self._changed(event.dest_path, event.is_directory)

    def _changed(self, path: str | bytes, is_directory: bool) -> None:
        self._emit("changed", path, is_directory)

    def _emit(self, kind: Literal["changed", "removed"], path: str | bytes, is_directory: bool) -> None:
        if is_directory:
            return
        decoded = os.fsdecode(path)
        if is_policy_file(decoded):
            self._submit(WatchEvent(kind, source_id_for(decoded)))


class PolicyWatcher:
    """
    Background activity that keeps the policy store in sync with disk.

    Usage:
        watcher = PolicyWatcher(
            "policies",
            on_reload=engine.reload_source,
            on_remove=engine.remove_source,
        )
        watcher.start()
        ...
        watcher.stop()

    Attributes:
        directory: Watched directory (absolute)
        debounce_seconds: Quiet window before a changed file is reloaded
    """

    def __init__(
        self,
        directory: Path | str,
        on_reload: Callable[[str], None],
        on_remove: Callable[[str], None],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        observer_factory: Callable[[], BaseObserver] | None = Observer,
    ) -> None:
        """
        Args:
            directory: Policy directory to watch (not recursive)
            on_reload: Called with a source id once its quiet window passes
                and the file exists
            on_remove: Called with a source id once its quiet window passes
                and the file is gone
            debounce_seconds: Quiet window for coalescing bursts of events
            observer_factory: Builds the watchdog observer; None disables
                filesystem notifications so events only arrive via submit()
        """
        self.directory = Path(source_id_for(directory))
        self.debounce_seconds = debounce_seconds
        self._on_reload = on_reload
        self._on_remove = on_remove
        self._observer_factory = observer_factory

        self._queue: queue.Queue[object] = queue.Queue()
        self._observer: BaseObserver | None = None
        self._worker: threading.Thread | None = None
        self._stopping = threading.Event()
        self._stopped = threading.Event()
        self._stopped.set()

    @property
    def running(self) -> bool:
        """Whether the worker is still processing events."""
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        """
        Subscribe to notifications and start the worker thread.

        Raises:
            WatchError: If the observer cannot be started
        """
        if self.running:
            return

        self._queue = queue.Queue()
        self._stopping.clear()
        self._stopped.clear()

        if self._observer_factory is not None:
            try:
                observer = self._observer_factory()
                observer.schedule(
                    _PolicyEventHandler(self.submit),
                    str(self.directory),
                    recursive=False,
                )
                observer.start()
            except Exception as e:
                self._stopped.set()
                raise WatchError(
                    directory=str(self.directory),
                    underlying_error=str(e),
                ) from e
            self._observer = observer

        self._worker = threading.Thread(
            target=self._run,
            name="policy-watcher",
            daemon=True,
        )
        self._worker.start()
        logger.info("Watching %s for policy changes", self.directory)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop notifications and wait for the worker to exit."""
        self._stopping.set()
        self._queue.put(_STOP)

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None

        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def wait_stopped(self, timeout: float | None = None) -> bool:
        """Block until the worker has exited. Returns False on timeout."""
        return self._stopped.wait(timeout)

    def submit(self, event: WatchEvent) -> None:
        """Queue an event for the worker."""
        self._queue.put(event)

    # =========================================================================
    # Worker
    # =========================================================================

    def _run(self) -> None:
        pending: dict[str, float] = {}
        try:
            while True:
                item = self._next_item(pending)
                if item is _STOP:
                    break
                if isinstance(item, WatchEvent):
                    self._dispatch(item, pending)
                self._flush_due(pending)

                if self._channel_closed():
                    logger.warning(
                        "Policy watcher lost its notification channel; hot-reload stopped"
                    )
                    break
        finally:
            self._stopped.set()

    def _next_item(self, pending: dict[str, float]) -> object | None:
        timeout = _IDLE_POLL_SECONDS
        if pending:
            timeout = min(timeout, max(0.0, min(pending.values()) - time.monotonic()))
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def _dispatch(self, event: WatchEvent, pending: dict[str, float]) -> None:
        logger.debug("Policy file %s: %s", event.kind, event.source_id)
        pending[event.source_id] = time.monotonic() + self.debounce_seconds

    def _flush_due(self, pending: dict[str, float]) -> None:
        now = time.monotonic()
        due = sorted(source for source, deadline in pending.items() if deadline <= now)
        for source in due:
            del pending[source]
            if os.path.isfile(source):
                self._safe_call(self._on_reload, source)
            else:
                self._safe_call(self._on_remove, source)

    def _safe_call(self, callback: Callable[[str], None], source_id: str) -> None:
        try:
            callback(source_id)
        except Exception as e:
            error = WatchError(directory=str(self.directory), underlying_error=str(e))
            logger.exception("%s (source: %s)", error.message, source_id)

    def _channel_closed(self) -> bool:
        # stop() clears the attribute from another thread
        observer = self._observer
        return (
            observer is not None
            and not self._stopping.is_set()
            and not observer.is_alive()
        )
