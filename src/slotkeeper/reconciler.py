import asyncio
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from slotkeeper.listeners import ListenerFactory
from slotkeeper.slots import MODE_STATIC, SlotEntry, managed_entries
from slotkeeper.store import read_config, utc_now_iso


class ListenerHost(Protocol):
    async def start(self, port: int, app: Any) -> Any: ...

    async def stop(self, listener: Any) -> None: ...


@dataclass
class ManagedListener:
    entry: SlotEntry
    handle: Any


@dataclass
class TickRecord:
    timestamp: str
    started: list[int] = field(default_factory=list)
    stopped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    aborted: bool = False
    error: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.started or self.stopped)


class Reconciler:
    """Converges the set of running listeners onto the slot configuration.

    The managed table is private to this instance and only mutated inside a
    tick; ticks never overlap.
    """

    def __init__(
        self,
        config_path: Path,
        factory: ListenerFactory,
        host: ListenerHost,
        max_history: int = 200,
    ) -> None:
        self.config_path = config_path
        self.factory = factory
        self.host = host
        self._managed: dict[int, ManagedListener] = {}
        self._history: list[TickRecord] = []
        self._max_history = max_history
        self._running = False
        self._pending = False
        self._idle = asyncio.Event()
        self._idle.set()
        self.tick_count = 0

    @property
    def managed_ports(self) -> set[int]:
        return set(self._managed)

    def snapshot(self) -> dict[str, Any]:
        return {
            "listeners": [
                self._managed[port].entry.describe() for port in sorted(self._managed)
            ],
            "last_tick": asdict(self._history[-1]) if self._history else None,
            "tick_count": self.tick_count,
        }

    def history(self) -> list[dict[str, Any]]:
        return [asdict(record) for record in self._history]

    async def trigger(self) -> None:
        """Run a tick, or fold this request into the one already running.

        A trigger that arrives mid-tick schedules exactly one follow-up run;
        any further triggers before that run starts are absorbed by it.
        """
        self._pending = True
        if self._running:
            return
        self._running = True
        self._idle.clear()
        try:
            while self._pending:
                self._pending = False
                await self._tick()
        finally:
            self._running = False
            self._idle.set()

    async def reconcile(self) -> TickRecord:
        await self.trigger()
        await self.wait_idle()
        return self._history[-1]

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def _tick(self) -> None:
        self.tick_count += 1
        record = TickRecord(timestamp=utc_now_iso())
        try:
            doc = await asyncio.to_thread(read_config, self.config_path)
        except (OSError, ValueError) as exc:
            logging.error(
                "Config read failed, keeping %s listener(s): %s",
                len(self._managed),
                exc,
            )
            record.aborted = True
            record.error = str(exc)
            self._record(record)
            return

        try:
            desired = await asyncio.to_thread(managed_entries, doc)
        except Exception as exc:
            logging.exception(
                "Slot classification failed, keeping %s listener(s)", len(self._managed)
            )
            record.aborted = True
            record.error = str(exc)
            self._record(record)
            return

        stale = [
            port
            for port, listener in self._managed.items()
            if desired.get(port) != listener.entry
        ]
        closing = [self._managed.pop(port) for port in stale]
        if closing:
            # Close must finish before a rebuilt listener binds the same port.
            await asyncio.gather(*(self._stop(listener) for listener in closing))
            record.stopped.extend(sorted(stale))

        for port, entry in desired.items():
            if port in self._managed:
                continue
            if await self._start(entry):
                record.started.append(port)
            else:
                record.failed.append(port)

        if record.changed or record.failed:
            logging.info(
                "Reconciled: started=%s stopped=%s failed=%s managing=%s",
                record.started,
                record.stopped,
                record.failed,
                sorted(self._managed),
            )
        self._record(record)

    async def _start(self, entry: SlotEntry) -> bool:
        try:
            app = self.factory.build(entry)
            handle = await self.host.start(entry.port, app)
        except OSError as exc:
            logging.warning(
                "[%s] Port %s unavailable, will retry next tick: %s",
                entry.slot,
                entry.port,
                exc,
            )
            return False
        except Exception:
            logging.exception("[%s] Failed to start listener on port %s", entry.slot, entry.port)
            return False
        self._managed[entry.port] = ManagedListener(entry=entry, handle=handle)
        logging.info(
            "[%s] %s listening on port %s",
            entry.slot,
            "Static site" if entry.mode == MODE_STATIC else "Placeholder",
            entry.port,
        )
        return True

    async def _stop(self, listener: ManagedListener) -> None:
        await self.host.stop(listener.handle)
        logging.info(
            "[%s] Released port %s (%s)",
            listener.entry.slot,
            listener.entry.port,
            listener.entry.mode,
        )

    def _record(self, record: TickRecord) -> None:
        self._history.append(record)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]

    async def shutdown(self) -> None:
        await self.wait_idle()
        listeners = [self._managed.pop(port) for port in list(self._managed)]
        if listeners:
            await asyncio.gather(*(self._stop(listener) for listener in listeners))
        logging.info("Closed %s listener(s)", len(listeners))


class ChangeWatcher:
    """Polls the configuration file and fires ``on_change`` once per burst.

    The first pass always fires, before any change is seen.
    """

    def __init__(
        self,
        path: Path,
        on_change: Callable[[], Awaitable[None]],
        poll_interval: float = 1.0,
        debounce: float = 0.5,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0 (got {poll_interval})")
        if debounce < 0:
            raise ValueError(f"debounce must be >= 0 (got {debounce})")
        self.path = path
        self.on_change = on_change
        self.poll_interval = poll_interval
        self.debounce = debounce
        self._stat_error: str | None = None

    def _signature(self) -> tuple[int, int, int] | None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            # logged once per distinct error; the next successful stat clears it
            if str(exc) != self._stat_error:
                logging.warning("Cannot stat %s: %s", self.path, exc)
                self._stat_error = str(exc)
            return None
        self._stat_error = None
        return st.st_mtime_ns, st.st_size, st.st_ino

    async def run(self, stop_event: asyncio.Event) -> None:
        last = self._signature()
        await self.on_change()
        while not stop_event.is_set():
            if await self._sleep_with_stop(stop_event, self.poll_interval):
                return
            current = self._signature()
            if current == last:
                continue
            while True:
                if await self._sleep_with_stop(stop_event, self.debounce):
                    return
                settled = self._signature()
                if settled == current:
                    break
                current = settled
            last = current
            logging.info("Configuration changed, reconciling...")
            await self.on_change()

    @staticmethod
    async def _sleep_with_stop(stop_event: asyncio.Event, seconds: float) -> bool:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
