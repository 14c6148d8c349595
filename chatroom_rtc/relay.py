"""Minimal in-memory room relay.

Tracks room membership and call membership, fans presence and chat events
out to room members, and forwards addressed signaling events to their
recipient only. The relay never sees media.

Usage:
    chatroom-rtc relay [--host HOST] [--port PORT]
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from chatroom_rtc.exceptions import ProtocolError
from chatroom_rtc.protocol import (
    EVT_ERROR,
    EVT_JOIN_CALL,
    EVT_JOIN_ROOM,
    EVT_LEAVE_CALL,
    EVT_LEAVE_ROOM,
    EVT_MEDIA_STATE_CHANGE,
    EVT_NEW_MESSAGE,
    EVT_ROOM_JOINED,
    EVT_SEND_MESSAGE,
    EVT_TYPING_START,
    EVT_TYPING_STOP,
    EVT_USER_JOINED,
    EVT_USER_JOINED_CALL,
    EVT_USER_LEFT,
    EVT_USER_LEFT_CALL,
    EVT_USER_MEDIA_STATE_CHANGED,
    EVT_USER_TYPING,
    EVT_WEBRTC_ANSWER,
    EVT_WEBRTC_ICE_CANDIDATE,
    EVT_WEBRTC_OFFER,
    KIND_TEXT,
    build_envelope,
    parse_envelope,
)

logger = logging.getLogger(__name__)

ADDRESSED_EVENTS = (EVT_WEBRTC_OFFER, EVT_WEBRTC_ANSWER, EVT_WEBRTC_ICE_CANDIDATE)


class RoomRelay:
    """Room and call membership for every connected client.

    Connections are any object with an async ``send(str)`` method.

    Attributes:
        rooms: room id -> {user id: connection}, in join order.
        calls: room id -> user ids currently in the call.
        members: connection -> (room id, user id).
    """

    def __init__(self):
        self.rooms: Dict[str, Dict[str, Any]] = {}
        self.calls: Dict[str, Set[str]] = {}
        self.members: Dict[Any, Tuple[str, str]] = {}

    async def _send(self, conn, event: str, payload: Dict[str, Any]) -> None:
        try:
            await conn.send(build_envelope(event, payload))
        except ConnectionClosed:
            logger.debug(f"Dropped {event}: connection already closed")

    async def _broadcast(
        self, room_id: str, event: str, payload: Dict[str, Any], exclude: Optional[str] = None
    ) -> None:
        for user_id, conn in list(self.rooms.get(room_id, {}).items()):
            if user_id != exclude:
                await self._send(conn, event, payload)

    def _snapshot(self, room_id: str, user_id: str) -> Dict[str, Any]:
        users = list(self.rooms.get(room_id, {}))
        return {"roomId": room_id, "userId": user_id, "userCount": len(users), "users": users}

    async def _error(self, conn, message: str) -> None:
        logger.warning(f"Relay error: {message}")
        await self._send(conn, EVT_ERROR, {"message": message})

    async def handle_message(self, conn, raw) -> None:
        """Handle one frame received from ``conn``."""
        try:
            event, payload = parse_envelope(raw)
        except ProtocolError as e:
            await self._error(conn, str(e))
            return

        if event == EVT_JOIN_ROOM:
            room_id = payload.get("roomId")
            user_id = payload.get("userId")
            if not room_id or not user_id:
                await self._error(conn, "join-room requires roomId and userId")
                return
            await self.join(conn, room_id, user_id)
            return

        membership = self.members.get(conn)
        if membership is None:
            await self._error(conn, f"{event} sent before join-room")
            return
        room_id, user_id = membership

        if event == EVT_LEAVE_ROOM:
            await self.leave(conn)

        elif event == EVT_SEND_MESSAGE:
            message = {
                "roomId": room_id,
                "userId": user_id,
                "message": payload.get("message", ""),
                "type": payload.get("type", KIND_TEXT),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            if payload.get("fileData"):
                message["fileData"] = payload["fileData"]
            await self._broadcast(room_id, EVT_NEW_MESSAGE, message)

        elif event in (EVT_TYPING_START, EVT_TYPING_STOP):
            await self._broadcast(
                room_id,
                EVT_USER_TYPING,
                {"userId": user_id, "isTyping": event == EVT_TYPING_START},
                exclude=user_id,
            )

        elif event == EVT_JOIN_CALL:
            self.calls.setdefault(room_id, set()).add(user_id)
            logger.info(f"{user_id} joined the call in {room_id}")
            await self._broadcast(
                room_id, EVT_USER_JOINED_CALL, {"userId": user_id, "roomId": room_id}, exclude=user_id
            )

        elif event == EVT_LEAVE_CALL:
            await self._leave_call(room_id, user_id)

        elif event == EVT_MEDIA_STATE_CHANGE:
            await self._broadcast(
                room_id,
                EVT_USER_MEDIA_STATE_CHANGED,
                {
                    "userId": user_id,
                    "isVideoOn": bool(payload.get("isVideoOn")),
                    "isAudioOn": bool(payload.get("isAudioOn")),
                },
                exclude=user_id,
            )

        elif event in ADDRESSED_EVENTS:
            target_id = payload.get("toUserId")
            target = self.rooms.get(room_id, {}).get(target_id)
            if target is None:
                logger.warning(f"{event} from {user_id}: target {target_id} not in {room_id}")
                return
            await self._send(target, event, {**payload, "roomId": room_id, "fromUserId": user_id})
            logger.debug(f"Forwarded {event} from {user_id} to {target_id}")

        else:
            await self._error(conn, f"Unknown event: {event}")

    async def join(self, conn, room_id: str, user_id: str) -> None:
        if conn in self.members:
            await self.leave(conn)

        room = self.rooms.setdefault(room_id, {})
        if user_id in room and room[user_id] is not conn:
            logger.warning(f"{user_id} joined {room_id} again, replacing old connection")
            self.members.pop(room[user_id], None)
        room[user_id] = conn
        self.members[conn] = (room_id, user_id)
        logger.info(f"{user_id} joined {room_id} (members: {len(room)})")

        await self._send(conn, EVT_ROOM_JOINED, self._snapshot(room_id, user_id))
        await self._broadcast(
            room_id, EVT_USER_JOINED, self._snapshot(room_id, user_id), exclude=user_id
        )

    async def _leave_call(self, room_id: str, user_id: str) -> None:
        in_call = self.calls.get(room_id, set())
        if user_id not in in_call:
            return
        in_call.discard(user_id)
        if not in_call:
            self.calls.pop(room_id, None)
        logger.info(f"{user_id} left the call in {room_id}")
        await self._broadcast(
            room_id, EVT_USER_LEFT_CALL, {"userId": user_id, "roomId": room_id}, exclude=user_id
        )

    async def leave(self, conn) -> None:
        """Remove ``conn`` from its room, telling the remaining members."""
        membership = self.members.pop(conn, None)
        if membership is None:
            return
        room_id, user_id = membership

        room = self.rooms.get(room_id, {})
        if room.get(user_id) is conn:
            del room[user_id]
        await self._leave_call(room_id, user_id)

        logger.info(f"{user_id} left {room_id} (members: {len(room)})")
        await self._broadcast(room_id, EVT_USER_LEFT, self._snapshot(room_id, user_id))
        if not room:
            self.rooms.pop(room_id, None)

    async def handle_disconnect(self, conn) -> None:
        await self.leave(conn)

    def room_members(self, room_id: str) -> Iterable[str]:
        return list(self.rooms.get(room_id, {}))


async def serve(host: str, port: int, relay: Optional[RoomRelay] = None) -> None:
    """Run the relay until cancelled."""
    relay = relay or RoomRelay()

    async def handler(websocket):
        try:
            async for message in websocket:
                await relay.handle_message(websocket, message)
        except ConnectionClosed:
            logger.info("Connection closed")
        finally:
            await relay.handle_disconnect(websocket)

    async with websockets.serve(handler, host, port):
        logger.info(f"Room relay running on ws://{host}:{port}")
        await asyncio.Future()  # Run forever


def run_relay(host: str = "localhost", port: int = 4000) -> None:
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")
