from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

from micseat.shared.protocol import (
    HEARTBEAT_INTERVAL_SECONDS,
    ClientIdentity,
    ControlAction,
    decode_control_stream,
    encode_control_message,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[ControlAction, dict], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]


class ControlClient:
    """Handles the TCP control connection that replicates room state."""

    def __init__(
        self,
        host: str,
        port: int,
        identity: ClientIdentity,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self._host = host
        self._port = port
        self._identity = identity
        self._on_message = on_message
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._send_task: Optional[asyncio.Task[None]] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._dispatch_task: Optional[asyncio.Task[None]] = None
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._inbox: asyncio.Queue[tuple[ControlAction, dict]] = asyncio.Queue()
        self._connected = asyncio.Event()
        self._stop = False
        self._on_disconnect = on_disconnect
        self._heartbeat_interval = max(0.5, heartbeat_interval)
        self._welcome: Optional[dict] = None

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._stop

    @property
    def welcome(self) -> Optional[dict]:
        return self._welcome

    async def connect(self) -> dict:
        """Open the connection and wait for WELCOME; returns its payload."""
        logger.info("Connecting to room server %s:%s as %s", self._host, self._port, self._identity.identity)
        self._stop = False
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        hello = encode_control_message(ControlAction.HELLO, self._identity.to_dict())
        await self._send_raw(hello)
        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._recv_loop())
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        await self._connected.wait()
        if self._stop or self._welcome is None:
            raise ConnectionError("Connection closed before handshake completed")
        await self._send_heartbeat()
        if not self._stop:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        return self._welcome

    async def close(self) -> None:
        self._stop = True
        self._send_event.set()
        for task in (self._heartbeat_task, self._dispatch_task):
            if task and task is not asyncio.current_task():
                task.cancel()
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                pass
        self._reader = None
        self._writer = None
        self._connected.clear()

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise RuntimeError("Client is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def send(self, action: ControlAction, payload: Dict[str, object]) -> None:
        if not self.is_connected:
            raise ConnectionError("Client is not connected")
        self._send_queue.append(encode_control_message(action, payload))
        self._send_event.set()

    async def set_attributes(self, delta: Dict[str, str]) -> None:
        """Queue a self-service attribute write; the echo arrives as ATTRIBUTES_CHANGED."""
        await self.send(ControlAction.SET_ATTRIBUTES, {"attributes": dict(delta)})

    async def _send_loop(self) -> None:
        while not self._stop:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue and not self._stop:
                data = self._send_queue.popleft()
                try:
                    await self._send_raw(data)
                except Exception:
                    logger.exception("Failed to send control message")
                    self._stop = True
                    break

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Server closed control connection")
                    disconnect_reason = "server_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_control_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    try:
                        action = ControlAction(message["action"])
                    except ValueError:
                        logger.debug("Ignoring unknown control action %s", message.get("action"))
                        continue
                    payload = message["data"]
                    if action == ControlAction.WELCOME:
                        # queued too, so the snapshot is applied before later deltas
                        self._welcome = payload
                        self._connected.set()
                    if action == ControlAction.ERROR and not self._connected.is_set():
                        logger.warning("Room server refused handshake: %s", payload.get("reason"))
                        disconnect_reason = str(payload.get("code") or "refused")
                        self._stop = True
                        break
                    self._inbox.put_nowait((action, payload))
        except Exception:
            logger.exception("Error while receiving from room server")
            disconnect_reason = "recv_error"
        finally:
            if not self._connected.is_set():
                self._connected.set()
            await self.close()
            await self._notify_disconnect(disconnect_reason or "connection_closed")

    async def _dispatch_loop(self) -> None:
        # one consumer keeps replicated updates in arrival order
        try:
            while True:
                action, payload = await self._inbox.get()
                try:
                    result = self._on_message(action, payload)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.exception("Error while handling control message %s", action)
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self) -> None:
        try:
            while not self._stop:
                await asyncio.sleep(self._heartbeat_interval)
                await self._send_heartbeat()
        except (asyncio.CancelledError, ConnectionError):
            pass

    async def _send_heartbeat(self) -> None:
        timestamp_ms = int(time.time() * 1000)
        logger.debug("Sending heartbeat from %s at %s", self._identity.identity, timestamp_ms)
        await self.send(ControlAction.HEARTBEAT, {"timestamp_ms": timestamp_ms})
