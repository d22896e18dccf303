from __future__ import annotations

import asyncio
import logging
from typing import Optional

from micseat.shared.models import ParticipantRole
from micseat.shared.protocol import (
    ClientIdentity,
    ControlAction,
    decode_control_stream,
    encode_control_message,
)

from .session_manager import SessionManager

logger = logging.getLogger(__name__)


class ControlServer:
    """Handles the TCP control plane that replicates attributes, permissions and metadata."""

    def __init__(
        self,
        host: str,
        port: int,
        session_manager: SessionManager,
        *,
        pre_shared_key: Optional[str] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._session_manager = session_manager
        self._server: Optional[asyncio.AbstractServer] = None
        self._pre_shared_key = pre_shared_key

    @property
    def port(self) -> int:
        if self._server and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Control server listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def force_disconnect(self, identity: str, *, actor: str = "admin") -> bool:
        """Remove a participant from the room and keep it out."""

        await self._session_manager.send_to(
            identity,
            ControlAction.ERROR,
            {
                "reason": "An administrator removed you from this room.",
                "code": "removed",
                "actor": actor,
            },
        )
        removed = await self._session_manager.unregister(
            identity,
            event_type="participant_removed",
            details={"actor": actor},
        )
        if not removed:
            return False
        await self._session_manager.ban_user(identity)
        await self._session_manager.broadcast(ControlAction.PARTICIPANT_LEFT, {"identity": identity})
        logger.info("Forcefully disconnected %s (actor=%s)", identity, actor)
        return True

    async def _refuse(self, writer: asyncio.StreamWriter, reason: str, code: str) -> None:
        try:
            writer.write(encode_control_message(ControlAction.ERROR, {"reason": reason, "code": code}))
            await writer.drain()
        except Exception:
            logger.debug("Failed to notify refused client (%s)", code)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        logger.info("Incoming TCP connection from %s", peer)

        buffer = b""
        identity: Optional[str] = None
        try:
            # Expect initial HELLO with identity
            while identity is None:
                data = await reader.read(4096)
                if not data:
                    raise ConnectionError("connection closed before handshake")
                buffer += data
                messages, buffer = decode_control_stream(buffer)
                if not messages:
                    continue
                message = messages[0]
                if message["action"] != ControlAction.HELLO.value:
                    raise ValueError("Expected HELLO as first message")
                hello = ClientIdentity.from_dict(message["data"])
                if self._pre_shared_key and hello.pre_shared_key != self._pre_shared_key:
                    logger.warning("Rejected client %s due to invalid pre-shared key", hello.identity)
                    await self._refuse(writer, "Authentication failed", "auth_failed")
                    return
                if hello.room_name and hello.room_name != self._session_manager.room_name:
                    logger.warning("Rejected client %s asking for unknown room %s", hello.identity, hello.room_name)
                    await self._refuse(writer, f"Room {hello.room_name} not found", "room_not_found")
                    return
                if await self._session_manager.is_banned(hello.identity):
                    logger.warning("Rejected banned participant %s", hello.identity)
                    await self._refuse(writer, "An administrator removed you from this room.", "removed")
                    await self._session_manager.record_blocked_attempt(hello.identity)
                    return
                try:
                    client = await self._session_manager.register(
                        hello.identity,
                        writer,
                        display_name=hello.display_name,
                        role=ParticipantRole.parse(str(hello.role)),
                        peername=peer,
                    )
                except ValueError:
                    logger.warning("Rejected duplicate identity %s", hello.identity)
                    await self._refuse(writer, "Identity already connected", "duplicate_identity")
                    return
                identity = client.identity
                await self._session_manager.record_received(identity, len(data))
                await self._session_manager.broadcast(
                    ControlAction.PARTICIPANT_JOINED,
                    {"participant": client.snapshot().to_dict()},
                    exclude={identity},
                )
                client.send(
                    ControlAction.WELCOME,
                    {
                        "identity": identity,
                        "room_name": self._session_manager.room_name,
                        "participants": await self._session_manager.list_participants(),
                        "metadata": await self._session_manager.room_metadata(),
                    },
                )
                await writer.drain()
                # anything pipelined behind HELLO is handled like regular traffic
                for extra in messages[1:]:
                    await self._dispatch(identity, extra)

            while True:
                data = await reader.read(4096)
                if not data:
                    break
                buffer += data
                await self._session_manager.record_received(identity, len(data))
                messages, buffer = decode_control_stream(buffer)
                for message in messages:
                    await self._dispatch(identity, message)
        except Exception as exc:
            logger.exception("Error while handling client %s: %s", peer, exc)
        finally:
            if identity:
                removed = await self._session_manager.unregister(identity)
                if removed:
                    await self._session_manager.broadcast(ControlAction.PARTICIPANT_LEFT, {"identity": identity})
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def _dispatch(self, identity: str, message: dict) -> None:
        try:
            action = ControlAction(message["action"])
        except ValueError:
            logger.debug("Ignoring unknown control action %s from %s", message.get("action"), identity)
            return
        await self._handle_message(identity, action, message.get("data") or {})

    async def _handle_message(self, identity: str, action: ControlAction, payload: dict) -> None:
        if action == ControlAction.HEARTBEAT:
            await self._session_manager.mark_heartbeat(identity)
            return

        if action == ControlAction.SET_ATTRIBUTES:
            attributes = payload.get("attributes")
            if not isinstance(attributes, dict) or not attributes:
                return
            try:
                await self._session_manager.set_attributes(identity, attributes)
            except PermissionError as exc:
                logger.warning("Refused attribute write from %s: %s", identity, exc)
                await self._session_manager.send_to(
                    identity,
                    ControlAction.ERROR,
                    {"reason": str(exc), "code": "forbidden"},
                )
            return

        logger.debug("Unhandled control action %s from %s", action, identity)
