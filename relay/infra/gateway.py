from __future__ import annotations

import asyncio
import json
import logging
import random
from collections import deque
from typing import Any, Awaitable, Callable

import websockets
from websockets.protocol import State

from relay.infra.logfmt import kv, short_text
from relay.service.errors import ChannelClosedError


JsonDict = dict[str, Any]

PING_INTERVAL_S = 20.0
SEND_RETRY_INTERVAL_S = 1.0
RECONNECT_BACKOFF_S = 0.5
RECONNECT_BACKOFF_MAX_S = 10.0

_CLEAN_CLOSE_CODES = (1000, 1001)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


_PING_RAW = _json_dumps({"type": "ping"})


class Gateway:
    """
    The single websocket connection to the coordinating server.

    `run_forever()` keeps the channel up (reconnect with backoff), `connect()`
    is one session: open, register, keep-alive, read until close. Outbound
    frames go through an outbox drained by one writer task per session, so
    frames sent while disconnected are delivered after the next register.
    """

    def __init__(
        self,
        server: str,
        user: str,
        dev: str,
        proxy: str | None = None,
        *,
        scheme: str = "wss",
        on_message: Callable[[JsonDict], Awaitable[None] | None] | None = None,
        logger: Any | None = None,
        ping_interval_s: float = PING_INTERVAL_S,
        send_retry_interval_s: float = SEND_RETRY_INTERVAL_S,
        reconnect_backoff_s: float = RECONNECT_BACKOFF_S,
        reconnect_backoff_max_s: float = RECONNECT_BACKOFF_MAX_S,
        max_size: int = 8 * 1024 * 1024,
    ) -> None:
        self.server = server
        self.user = user
        self.dev = dev
        self.proxy = proxy or None
        self.scheme = scheme
        self.on_message = on_message
        self.logger = logger or logging.getLogger("relay.gateway")
        self.ping_interval_s = ping_interval_s
        self.send_retry_interval_s = send_retry_interval_s
        self.reconnect_backoff_s = reconnect_backoff_s
        self.reconnect_backoff_max_s = reconnect_backoff_max_s
        self.max_size = max_size
        self.is_connected = False
        self._ws: Any | None = None
        self._in_session = False
        self._inflight: str | None = None
        self._outbox: deque[str] = deque()
        self._outbox_ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._message_tasks: set[asyncio.Task[None]] = set()

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.server}/connect"

    @property
    def pending_count(self) -> int:
        return len(self._outbox)

    def pending_frames(self) -> list[JsonDict]:
        return [json.loads(raw) for raw in self._outbox]

    # -- outbound -----------------------------------------------------------

    def send_message(self, frame: JsonDict | str) -> None:
        raw = frame if isinstance(frame, str) else _json_dumps(frame)
        self._outbox.append(raw)
        self._outbox_ready.set()
        if not self.is_connected:
            self.logger.warning(kv(op="ws.send.queued", reason="not_open", pending=len(self._outbox)))

    def transfer_result(self, task_id: str, response: str, status: int) -> None:
        self.send_message({"type": "response", "taskid": task_id, "response": response, "status": status})

    def transfer_error(self, task_id: str, error: str, code: int) -> None:
        self.send_message({"type": "error", "taskid": task_id, "error": error, "code": code})

    async def _transmit(self, ws: Any, raw: str) -> None:
        if ws is None or ws is not self._ws or ws.state is not State.OPEN:
            raise ChannelClosedError("gateway channel not open")
        await ws.send(raw)

    async def _writer_loop(self, ws: Any) -> None:
        while True:
            while not self._outbox:
                self._outbox_ready.clear()
                await self._outbox_ready.wait()
            raw = self._outbox.popleft()
            self._inflight = raw
            try:
                await self._transmit(ws, raw)
            except ChannelClosedError:
                # Nothing was written; the frame goes back to the head.
                self._inflight = None
                self._outbox.appendleft(raw)
                return
            except websockets.ConnectionClosed:
                # Written but possibly not delivered; settled by _end_session.
                return
            except Exception as e:
                self._inflight = None
                self._outbox.appendleft(raw)
                self.logger.warning(kv(op="ws.send.retry", error=f"{type(e).__name__}: {e}", retry_in_s=self.send_retry_interval_s))
                await asyncio.sleep(self.send_retry_interval_s)
                continue
            self._inflight = None

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval_s)
            if self.is_connected:
                self.send_message(_PING_RAW)

    def _end_session(self, ws: Any) -> None:
        raw = self._inflight
        self._inflight = None
        if raw is not None:
            # A completed close handshake means the peer read everything written before it.
            if getattr(ws, "close_code", None) in _CLEAN_CLOSE_CODES:
                self.logger.info(kv(op="ws.send.settled", delivered=True))
            else:
                self.logger.warning(kv(op="ws.send.settled", delivered="unknown", action="requeue"))
                self._outbox.appendleft(raw)

        # Pings only mean something to the session that queued them.
        dropped = sum(1 for r in self._outbox if r == _PING_RAW)
        if dropped:
            self._outbox = deque(r for r in self._outbox if r != _PING_RAW)
            self.logger.info(kv(op="ws.ping.dropped", count=dropped))

    # -- inbound ------------------------------------------------------------

    async def _dispatch(self, msg: JsonDict) -> None:
        if self.on_message is None:
            return
        try:
            ret = self.on_message(msg)
            if asyncio.iscoroutine(ret):
                await ret
        except Exception as e:
            self.logger.error(kv(op="ws.message.handler_failed", type=msg.get("type"), error=f"{type(e).__name__}: {e}"))

    def _handle_raw(self, raw: str | bytes) -> None:
        text = raw.decode("utf-8", errors="ignore") if isinstance(raw, bytes) else raw
        self.logger.info(kv(op="ws.recv", msg=short_text(text, 500)))
        if self.on_message is None:
            return
        try:
            msg = json.loads(text)
        except ValueError:
            return
        if not isinstance(msg, dict):
            return
        task = asyncio.create_task(self._dispatch(msg), name=f"ws_message:{msg.get('type') or '?'}")
        self._message_tasks.add(task)
        task.add_done_callback(self._message_tasks.discard)

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> bool:
        """
        Run one connection session until the channel closes.

        Returns True when the session got as far as registering. Calling it
        while a session is already running is a no-op that returns False.
        """
        if self._in_session:
            self.logger.warning(kv(op="ws.connect.skip", reason="session_active", url=self.url))
            return False
        self._in_session = True
        try:
            return await self._run_session()
        finally:
            self._in_session = False

    async def _run_session(self) -> bool:
        registered = False
        async with websockets.connect(
            self.url,
            proxy=self.proxy,
            ping_interval=20,
            ping_timeout=20,
            max_size=self.max_size,
        ) as ws:
            self._ws = ws
            self.is_connected = True
            self.logger.info(kv(op="ws.open", url=self.url, proxy=self.proxy, pending=len(self._outbox)))
            ping_task: asyncio.Task[None] | None = None
            writer_task: asyncio.Task[None] | None = None
            try:
                # Register goes out before the writer starts so it is always the first frame.
                await ws.send(_json_dumps({"type": "register", "user": self.user, "dev": self.dev}))
                registered = True
                self.logger.info(kv(op="register.sent", user=self.user, dev=self.dev))
                ping_task = asyncio.create_task(self._ping_loop(), name="gateway_ping")
                writer_task = asyncio.create_task(self._writer_loop(ws), name="gateway_writer")
                async for raw in ws:
                    self._handle_raw(raw)
            except websockets.ConnectionClosed as e:
                self.logger.info(kv(op="ws.closed", code=getattr(e.rcvd, "code", None)))
            finally:
                for task in (ping_task, writer_task):
                    if task is not None:
                        task.cancel()
                await asyncio.gather(*(t for t in (ping_task, writer_task) if t is not None), return_exceptions=True)
                if self._ws is ws:
                    self.is_connected = False
                    self._ws = None
        # Close code is only final once the context manager has closed the socket.
        self._end_session(ws)
        self.logger.info(kv(op="ws.disconnected", url=self.url, pending=len(self._outbox)))
        return registered

    async def run_forever(self) -> None:
        backoff_s = self.reconnect_backoff_s
        self._stop.clear()
        try:
            while not self._stop.is_set():
                try:
                    if await self.connect():
                        backoff_s = self.reconnect_backoff_s
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error(kv(op="ws.error", url=self.url, error=f"{type(e).__name__}: {e}"))
                if self._stop.is_set():
                    break
                delay = backoff_s + random.random() * 0.2
                self.logger.warning(f"gateway connection lost; retrying in {delay:.1f}s")
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                backoff_s = min(self.reconnect_backoff_max_s, backoff_s * 1.7)
        finally:
            for task in list(self._message_tasks):
                task.cancel()
            if self._message_tasks:
                await asyncio.gather(*self._message_tasks, return_exceptions=True)

    async def close(self) -> None:
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                self.logger.warning(kv(op="ws.close.failed", error=f"{type(e).__name__}: {e}"))
