"""
ICN Watch Loop - reacts to new proposals and new ledger vertices.

Two producers feed one asyncio.Queue:

    QueueWatcher  watchdog observer on queue/  -> WatchEvent(kind="queue")
                  (+ a detached dispatch task per pending file)
    LedgerPoller  ledger length every N seconds -> WatchEvent(kind="dag")

The watchdog observer runs on its own thread; events cross into the loop
with call_soon_threadsafe. A file is dispatched once its events have been
quiet for `settle_delay` seconds, so half-written proposals are not read.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import NodeError, QueueError, StateError, ValidationError
from .executor import ExecutionCoordinator
from .ledger import VertexLedger
from .models import ProposalStatus, utcnow
from .queue import PROPOSAL_SUFFIX, ProposalStore, parse_filename

logger = logging.getLogger(__name__)


@dataclass
class WatchEvent:
    kind: str  # "queue" or "dag"
    message: str
    path: Optional[Path] = None
    vertex_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


class _QueueEventHandler(FileSystemEventHandler):
    """Forwards `.dsl` create/modify/move-in events to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: Callable[[Path], None]):
        super().__init__()
        self._loop = loop
        self._callback = callback

    def _forward(self, raw_path: Any) -> None:
        path = Path(raw_path.decode() if isinstance(raw_path, bytes) else raw_path)
        if path.suffix != PROPOSAL_SUFFIX:
            return
        try:
            self._loop.call_soon_threadsafe(self._callback, path)
        except RuntimeError:
            # loop already closed during shutdown
            pass

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.dest_path)


# =============================================================================
# Producers
# =============================================================================

class QueueWatcher:
    """
    Filesystem watcher for the queue directory.

    When a coordinator is given, every pending file it sees is dispatched in
    its own task; the coordinator's dispatch guard keeps this safe against
    the periodic sweep.
    """

    def __init__(
        self,
        store: ProposalStore,
        events: "asyncio.Queue[WatchEvent]",
        coordinator: Optional[ExecutionCoordinator] = None,
        settle_delay: float = 0.5,
    ) -> None:
        self._store = store
        self._events = events
        self._coordinator = coordinator
        self._settle_delay = settle_delay
        self._observer: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timers: Dict[Path, asyncio.TimerHandle] = {}
        self._inflight: Set[Path] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._store.ensure_dirs()
        handler = _QueueEventHandler(self._loop, self.notify)
        observer = Observer()
        try:
            observer.schedule(handler, str(self._store.queue_dir), recursive=False)
            observer.start()
        except OSError as exc:
            raise QueueError(f"Failed to watch queue directory: {exc}") from exc
        self._observer = observer
        logger.info(f"Watching queue directory {self._store.queue_dir}")

    def notify(self, path: Path) -> None:
        """Record activity on `path`; dispatch once it settles. Loop thread only."""
        loop = self._loop or asyncio.get_running_loop()
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        self._timers[path] = loop.call_later(self._settle_delay, self._settled, path)

    def _settled(self, path: Path) -> None:
        self._timers.pop(path, None)
        if not path.exists() or path in self._inflight:
            return

        try:
            _, status = parse_filename(path.name)
        except QueueError:
            if not path.name.startswith("proposal_"):
                # the rename shows up as a fresh move event
                try:
                    self._store.adopt_strays()
                except QueueError as exc:
                    logger.error(f"Could not adopt {path.name}: {exc}")
            return
        if status is not ProposalStatus.PENDING:
            return

        self._events.put_nowait(
            WatchEvent(kind="queue", message=f"New proposal file: {path.name}", path=path)
        )
        if self._coordinator is None:
            return

        self._inflight.add(path)
        task = asyncio.ensure_future(self._dispatch(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, path: Path) -> None:
        try:
            await self._coordinator.dispatch(path)
        except ValidationError as exc:
            logger.warning(f"Proposal {path.name} rejected: {exc.reason}")
        except NodeError as exc:
            logger.error(f"Error executing {path.name}: {exc}")
        finally:
            self._inflight.discard(path)

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, observer.join, 5.0)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class LedgerPoller:
    """Emits one event per vertex appended since the previous poll."""

    def __init__(
        self,
        ledger: VertexLedger,
        events: "asyncio.Queue[WatchEvent]",
        interval: float = 5.0,
    ) -> None:
        self._ledger = ledger
        self._events = events
        self._interval = interval
        self._seen: Optional[int] = None

    def poll_once(self) -> int:
        vertices = self._ledger.all()
        if self._seen is None:
            self._seen = len(vertices)
            return 0
        fresh = vertices[self._seen:]
        for vertex in fresh:
            self._events.put_nowait(WatchEvent(
                kind="dag",
                message=f"New DAG vertex: {vertex.id}",
                vertex_id=vertex.id,
            ))
        self._seen = len(vertices)
        return len(fresh)

    async def run(self, stop_event: asyncio.Event) -> None:
        self.poll_once()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                self.poll_once()
            except StateError as exc:
                logger.warning(f"Ledger poll failed: {exc}")


# =============================================================================
# Loop
# =============================================================================

class WatchLoop:
    """Runs both producers and hands every event to one consumer callback."""

    def __init__(
        self,
        store: ProposalStore,
        ledger: VertexLedger,
        coordinator: Optional[ExecutionCoordinator] = None,
        *,
        poll_interval: float = 5.0,
        watch_queue: bool = True,
        settle_delay: float = 0.5,
    ) -> None:
        self.events: "asyncio.Queue[WatchEvent]" = asyncio.Queue()
        self.watcher: Optional[QueueWatcher] = None
        if watch_queue:
            self.watcher = QueueWatcher(store, self.events, coordinator, settle_delay)
        self.poller = LedgerPoller(ledger, self.events, poll_interval)

    async def run(
        self,
        stop_event: asyncio.Event,
        on_event: Callable[[WatchEvent], Any],
    ) -> None:
        """Consume events until `stop_event` is set. `on_event` may be async."""
        if self.watcher is not None:
            await self.watcher.start()
        poll_task = asyncio.ensure_future(self.poller.run(stop_event))
        stop_task = asyncio.ensure_future(stop_event.wait())

        try:
            while not stop_event.is_set():
                get_task = asyncio.ensure_future(self.events.get())
                done, _ = await asyncio.wait(
                    {get_task, stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if get_task not in done:
                    get_task.cancel()
                    break
                outcome = on_event(get_task.result())
                if inspect.isawaitable(outcome):
                    await outcome
        finally:
            for task in (poll_task, stop_task):
                task.cancel()
            await asyncio.gather(poll_task, stop_task, return_exceptions=True)
            if self.watcher is not None:
                await self.watcher.stop()
