"""Network state monitor."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from infoline.types import NetworkState

logger = logging.getLogger(__name__)

ConnectivityProbe = Callable[[], bool | None]
NetworkListener = Callable[[bool], Any]


class NetworkMonitor:
    """Tracks whether the platform is reachable and announces transitions.

    ``went_online`` and ``went_offline`` are the event handlers for the
    platform's connectivity events. Listeners get the new ``is_offline``
    value; coroutine listeners run as background tasks so an event handler
    never blocks on them.
    """

    def __init__(self) -> None:
        self._state = NetworkState()
        self._initialized = False
        self._listeners: list[NetworkListener] = []
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> NetworkState:
        return self._state

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, probe: ConnectivityProbe | None = None) -> None:
        """Read the current connectivity once.

        Without a probe, or when the probe cannot answer, the monitor
        assumes it is online.
        """
        online: bool | None = None
        if probe is not None:
            try:
                online = probe()
            except Exception:
                logger.warning("Connectivity probe failed, assuming online", exc_info=True)
        self._state.is_offline = online is False
        self._initialized = True
        logger.info(
            "Network monitor initialized: %s",
            "offline" if self._state.is_offline else "online",
        )

    def is_offline(self) -> bool:
        return self._state.is_offline

    def subscribe(self, listener: NetworkListener) -> Callable[[], None]:
        """Register a transition listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def went_online(self) -> None:
        if not self._state.is_offline:
            return
        self._state.is_offline = False
        logger.info("Network connection restored")
        self._notify()

    def went_offline(self) -> None:
        if self._state.is_offline:
            return
        self._state.is_offline = True
        logger.warning("Network connection lost, switching to offline mode")
        self._notify()

    def _notify(self) -> None:
        is_offline = self._state.is_offline
        for listener in list(self._listeners):
            try:
                result = listener(is_offline)
            except Exception:
                logger.exception("Network listener %r failed", listener)
                continue
            if inspect.isawaitable(result):
                self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        async def run() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("Network listener task failed")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, dropping network listener task")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(run())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def watch(
        self,
        check: Callable[[], Awaitable[bool]],
        interval: float,
    ) -> asyncio.Task[None]:
        """Poll ``check`` every ``interval`` seconds and feed the result in.

        Useful where the platform emits no connectivity events of its own.
        """
        if self._watch_task is not None and not self._watch_task.done():
            return self._watch_task

        async def poll() -> None:
            while True:
                try:
                    reachable = await check()
                except Exception:
                    logger.debug("Connectivity check raised", exc_info=True)
                    reachable = False
                if reachable:
                    self.went_online()
                else:
                    self.went_offline()
                await asyncio.sleep(interval)

        self._watch_task = asyncio.get_running_loop().create_task(poll())
        return self._watch_task

    async def wait_idle(self) -> None:
        """Wait for listener tasks started by past transitions."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel the watcher and outstanding listener tasks."""
        tasks = list(self._background_tasks)
        if self._watch_task is not None:
            tasks.append(self._watch_task)
            self._watch_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
