"""Filesystem change detection for tracked packages.

The watcher subscribes to the *parent directory* of every candidate path
rather than to the files themselves. Editors that save by writing a temporary
file and renaming it over the original replace the inode, which silently kills
a file-level watch; a directory-level watch still sees the rename.

Raw watchdog callbacks run on the observer thread. They only record what
happened; a single worker thread coalesces bursts of events per package,
re-resolves packages when directories change, and feeds the resulting
:class:`ChangeEvent` objects into a bounded queue that the daemon drains.
"""

import logging
import os
import queue
import threading
import time
from collections.abc import Callable, Hashable, Iterator
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from .constants import (
    APP_NAME,
    DEFAULT_DEBOUNCE,
    DEFAULT_POLL_INTERVAL,
    EVENT_QUEUE_SIZE,
)
from .package import PackageModel
from .path import expand

logger = logging.getLogger(APP_NAME)

_IGNORED_EVENT_TYPES = {"opened", "closed_no_write"}


@dataclass(frozen=True)
class ChangeEvent:
    """A tracked package was modified on disk."""

    package: str
    detected_at: float


@dataclass(frozen=True)
class ReloadEvent:
    """The configuration file itself changed."""

    path: Path
    detected_at: float


_RELOAD = "\0reload"


class Debouncer:
    """Coalesces bursts of events per key.

    A key becomes due ``window`` seconds after its most recent event, but never
    later than ``max_wait`` seconds after its first one, so a file that is
    written continuously still produces periodic events. Not thread-safe; the
    watcher guards it with its own lock.
    """

    def __init__(self, window: float, max_wait: float | None = None):
        self.window = window
        self.max_wait = max_wait if max_wait is not None else window * 10
        # key -> (first_seen, first_seen_wall, last_seen)
        self._pending: dict[Hashable, tuple[float, float, float]] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def push(self, key: Hashable, now: float, wall: float | None = None) -> None:
        first, first_wall, _ = self._pending.get(
            key, (now, wall if wall is not None else time.time(), now)
        )
        self._pending[key] = (first, first_wall, now)

    def _due_at(self, first: float, last: float) -> float:
        return min(last + self.window, first + self.max_wait)

    def next_deadline(self) -> float | None:
        if not self._pending:
            return None
        return min(self._due_at(f, last) for f, _, last in self._pending.values())

    def flush(self, now: float) -> list[tuple[Hashable, float]]:
        """Removes and returns due keys with their first wall-clock time.

        Keys are returned in order of first arrival.
        """
        due = [
            (first, key, first_wall)
            for key, (first, first_wall, last) in self._pending.items()
            if self._due_at(first, last) <= now
        ]
        due.sort(key=lambda item: item[0])
        for _, key, _ in due:
            del self._pending[key]
        return [(key, first_wall) for _, key, first_wall in due]


class _PackageEventHandler(FileSystemEventHandler):
    """Routes raw watchdog events to the owning watcher."""

    def __init__(self, watcher: "Watcher"):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENT_TYPES:
            return
        self.watcher._on_raw_event(event)


class Watcher:
    """Emits a stream of change notifications for tracked packages.

    Attributes:
        model (PackageModel): The current package generation.
        config_path (Path | None): Config file whose edits produce ReloadEvents.
        events (queue.Queue): Bounded channel consumed by the daemon.
    """

    def __init__(
        self,
        model: PackageModel,
        config_path: Path | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        queue_size: int = EVENT_QUEUE_SIZE,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ):
        self.model = model
        self.config_path = expand(config_path) if config_path else None
        self.poll_interval = poll_interval
        self.events: queue.Queue[ChangeEvent | ReloadEvent] = queue.Queue(queue_size)

        self._observer_factory = observer_factory
        self._observer: BaseObserver | None = None
        self._handler = _PackageEventHandler(self)
        self._watches: dict[Path, ObservedWatch] = {}
        self._missing_dirs: set[Path] = set()
        self._targets: dict[Path, set[str]] = {}
        self._resolved: dict[str, Path | None] = {}

        self._debouncer = Debouncer(debounce)
        self._cond = threading.Condition()
        self._rescan_requested = False
        self._stopped = threading.Event()
        self._worker: threading.Thread | None = None

    # --- Lifecycle ---

    def start(
        self, stop: threading.Event | None = None
    ) -> Iterator[ChangeEvent | ReloadEvent]:
        """Starts watching and returns the event stream.

        The stream never ends on its own. It finishes once :meth:`stop` is
        called or ``stop`` is set.
        """
        if self._observer is None:
            self._stopped.clear()
            self._observer = self._observer_factory()
            self._resolved = self._current_resolutions(self.model)
            self._subscribe()
            self._observer.start()
            self._worker = threading.Thread(
                target=self._run, name="homesync-watcher", daemon=True
            )
            self._worker.start()
            logger.info(
                f"Watching {len(self._watches)} directories for "
                f"{len(self.model)} packages."
            )
        return self._stream(stop)

    def stop(self) -> None:
        """Releases every subscription and stops the background threads."""
        self._stopped.set()
        with self._cond:
            self._cond.notify_all()
        if self._observer is not None:
            self._observer.unschedule_all()
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
        if self._worker is not None:
            self._worker.join(timeout=5.0)
            self._worker = None
        self._watches.clear()
        logger.info("Watcher stopped.")

    def update(self, model: PackageModel) -> None:
        """Switches to a new package generation (e.g. after a config reload)."""
        with self._cond:
            self.model = model
            self._rescan_requested = True
            self._cond.notify_all()

    def _stream(
        self, stop: threading.Event | None
    ) -> Iterator[ChangeEvent | ReloadEvent]:
        while not self._stopped.is_set() and not (stop and stop.is_set()):
            try:
                yield self.events.get(timeout=0.2)
            except queue.Empty:
                continue

    # --- Subscriptions ---

    def _current_resolutions(self, model: PackageModel) -> dict[str, Path | None]:
        return {name: r.path for name, r in model.resolutions.items()}

    def _subscribe(self) -> None:
        """Brings the observer's watches in line with the current model."""
        targets: dict[Path, set[str]] = {}
        for package in self.model:
            for candidate in self.model.resolver.candidates(package):
                targets.setdefault(candidate, set()).add(package.name)
        self._targets = targets

        wanted = {p.parent for p in targets}
        if self.config_path is not None:
            wanted.add(self.config_path.parent)

        present = {d for d in wanted if d.is_dir()}
        self._missing_dirs = wanted - present

        for directory in set(self._watches) - present:
            watch = self._watches.pop(directory)
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError) as e:
                logger.debug(f"Unwatch of {directory} failed: {e}")

        for directory in present - set(self._watches):
            try:
                self._watches[directory] = self._observer.schedule(
                    self._handler, str(directory), recursive=False
                )
                logger.debug(f"Watching {directory}")
            except OSError as e:
                logger.error(f"Could not watch {directory}: {e}")
                self._missing_dirs.add(directory)

    def _rescan(self) -> None:
        """Re-resolves every package and re-subscribes.

        Packages whose resolved path changed are reported as changed, which
        covers files created before their directory's watch was in place.
        If :meth:`update` swaps the model mid-rescan, the result is dropped
        and another rescan is requested for the new generation.
        """
        with self._cond:
            base = self.model
        model = base.refresh()
        resolved = self._current_resolutions(model)
        with self._cond:
            if self.model is not base:
                self._rescan_requested = True
                self._cond.notify_all()
                return
            self.model = model
        changed = [
            name
            for name, path in resolved.items()
            if path is not None and self._resolved.get(name) != path
        ]
        self._resolved = resolved
        if self._observer is not None:
            self._subscribe()

        now = time.monotonic()
        with self._cond:
            for name in changed:
                logger.debug(f"Resolution of {name} changed to {resolved[name]}")
                self._debouncer.push(name, now)

    # --- Event flow ---

    def _on_raw_event(self, event: FileSystemEvent) -> None:
        paths = [Path(os.fsdecode(event.src_path))]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(Path(os.fsdecode(dest)))

        # Creations, deletions and renames can change which candidate wins.
        structural = event.event_type in ("created", "deleted", "moved")

        now = time.monotonic()
        with self._cond:
            if event.is_directory or structural:
                self._rescan_requested = True
            for path in paths:
                if self.config_path is not None and path == self.config_path:
                    self._debouncer.push(_RELOAD, now)
                for name in self._targets.get(path, ()):
                    self._debouncer.push(name, now)
            self._cond.notify_all()

    def _run(self) -> None:
        next_poll = time.monotonic() + self.poll_interval
        while not self._stopped.is_set():
            with self._cond:
                now = time.monotonic()
                deadline = self._debouncer.next_deadline()
                timeout = next_poll - now
                if deadline is not None:
                    timeout = min(timeout, deadline - now)
                if not self._rescan_requested and timeout > 0:
                    self._cond.wait(timeout)
                rescan = self._rescan_requested
                self._rescan_requested = False

            if self._stopped.is_set():
                break

            try:
                now = time.monotonic()
                if now >= next_poll:
                    next_poll = now + self.poll_interval
                    if any(d.is_dir() for d in self._missing_dirs):
                        rescan = True
                if rescan:
                    self._rescan()

                with self._cond:
                    due = self._debouncer.flush(time.monotonic())
                for key, detected_at in due:
                    self._emit(key, detected_at)
            except Exception:
                logger.exception("Watcher worker error")

    def _emit(self, key: Hashable, detected_at: float) -> None:
        if key == _RELOAD:
            event: ChangeEvent | ReloadEvent = ReloadEvent(
                self.config_path, detected_at
            )
        else:
            event = ChangeEvent(key, detected_at)
        while not self._stopped.is_set():
            try:
                self.events.put(event, timeout=0.5)
                logger.debug(f"Queued {event}")
                return
            except queue.Full:
                logger.warning("Event queue full; waiting for the daemon to catch up.")
