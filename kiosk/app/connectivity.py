from __future__ import annotations

import time
from typing import Callable, Optional

import httpx

from .config import settings
from .logs import json_log

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """
    Tracks whether the order backend is reachable.

    Two inputs feed it. `set_online()` carries the runtime signal (network
    events, or the POS screen relaying navigator.onLine); `probe()` actually
    asks the backend and records whether it answered. `is_online` is true
    only when both agree. Listeners only hear about transitions of it.

    A failed probe never lowers `network_up`, so the auto-sync timer keeps
    ticking through a backend outage and the next drain's probe notices the
    recovery.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        online: bool = True,
    ) -> None:
        self.client = client
        self.api_base_url = (api_base_url or settings.api_base_url).rstrip("/")
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.connectivity_timeout_s)
        self._network_up = bool(online)
        self._reachable = True
        self._listeners: list[Listener] = []
        self.last_probe: Optional[dict] = None

    @property
    def network_up(self) -> bool:
        return self._network_up

    @property
    def backend_reachable(self) -> bool:
        return self._reachable

    @property
    def is_online(self) -> bool:
        return self._network_up and self._reachable

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _update(self, *, network_up: Optional[bool] = None, reachable: Optional[bool] = None) -> None:
        before = self.is_online
        if network_up is not None:
            self._network_up = network_up
        if reachable is not None:
            self._reachable = reachable
        online = self.is_online
        if online == before:
            return
        json_log("info", "connectivity.changed", online=online, network_up=self._network_up, backend_reachable=self._reachable)
        for listener in list(self._listeners):
            listener(online)

    def set_online(self, online: bool) -> None:
        self._update(network_up=bool(online))

    async def probe(self) -> bool:
        url = f"{self.api_base_url}/health"
        started = time.time()
        try:
            resp = await self.client.get(url, timeout=self.timeout_s)
            ok = resp.is_success
            error = None if ok else f"HTTP {resp.status_code}"
        except httpx.HTTPError as ex:
            ok = False
            error = str(ex) or type(ex).__name__
        self.last_probe = {
            "ok": ok,
            "error": error,
            "latency_ms": int((time.time() - started) * 1000),
            "url": url,
        }
        self._update(reachable=ok)
        return ok
