"""
=============================================================================
EDUCASINO - Hub en Tiempo Real
=============================================================================
Registro de conexiones, salas de chat y difusión de eventos del Crash.

- El hub es el único dueño del registro de conexiones
- Cada conexión tiene una cola de salida acotada y su propia tarea
  escritora; si la cola se llena se descarta el mensaje más antiguo
- Un envío fallido da de baja la conexión (poda perezosa)
=============================================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

from pydantic import ValidationError

from .errors import CasinoError, Forbidden, MessageNotFound, NotAuthenticated, RoomNotFound
from .messages import (
    Cashout,
    ChatMessageIn,
    JoinRoom,
    ModerateMessage,
    PlaceBet,
    PlayGame,
    ServerMessageType,
    error_message,
    parse_client_message,
    server_message,
)
from .models import ModerationStatus
from .storage import Storage, UserAccount

if TYPE_CHECKING:
    from .betting import BettingService
    from .crash_game import CrashGame

logger = logging.getLogger(__name__)

Sender = Callable[[str, Dict[str, Any]], Awaitable[None]]


class HubConfig:
    """Configuración del hub."""

    OUTBOX_SIZE = 64
    ROOMS = ("general", "crash", "slots", "roulette", "dice")
    CHAT_HISTORY = 50


@dataclass
class Connection:
    """Conexión de un cliente."""
    sid: str
    user: Optional[UserAccount] = None
    room: Optional[str] = None
    outbox_size: int = HubConfig.OUTBOX_SIZE
    connected_at: float = field(default_factory=time.time)
    dropped: int = 0
    writer: Optional[asyncio.Task] = None
    outbox: asyncio.Queue = field(init=False)

    def __post_init__(self):
        self.outbox = asyncio.Queue(maxsize=self.outbox_size)

    @property
    def is_admin(self) -> bool:
        return bool(self.user and self.user.is_admin)

    @property
    def display_name(self) -> str:
        return self.user.username if self.user else f"guest-{self.sid[:6]}"

    def enqueue(self, payload: Dict[str, Any]):
        """Encola sin bloquear; con la cola llena se pierde el más antiguo."""
        if self.outbox.full():
            self.outbox.get_nowait()
            self.dropped += 1
        self.outbox.put_nowait(payload)


class RealtimeHub:
    """
    Args:
        sender: Corrutina que entrega un frame a un sid (p.ej. sio.emit).
        storage: Chat y usuarios.
        crash_game: Motor del Crash (se asigna al cablear la app).
        betting: Servicio de apuestas instantáneas.
    """

    def __init__(
        self,
        sender: Sender,
        storage: Storage,
        crash_game: Optional["CrashGame"] = None,
        betting: Optional["BettingService"] = None,
        outbox_size: int = HubConfig.OUTBOX_SIZE,
        rooms: tuple = HubConfig.ROOMS
    ):
        self._sender = sender
        self.storage = storage
        self.crash_game = crash_game
        self.betting = betting
        self.outbox_size = outbox_size
        self.rooms = tuple(rooms)
        self.connections: Dict[str, Connection] = {}

        self._handlers = {
            "joinRoom": self._on_join_room,
            "chatMessage": self._on_chat_message,
            "moderateMessage": self._on_moderate_message,
            "placeBet": self._on_place_bet,
            "cashout": self._on_cashout,
            "playGame": self._on_play_game,
        }

    # =========================================================================
    # REGISTRO
    # =========================================================================

    async def register(self, sid: str, user: Optional[UserAccount] = None) -> Connection:
        """Alta de conexión y snapshot inicial del estado."""
        conn = Connection(sid=sid, user=user, outbox_size=self.outbox_size)
        self.connections[sid] = conn
        conn.writer = asyncio.create_task(self._writer(conn), name=f"hub-writer-{sid}")

        self.send(sid, ServerMessageType.GAME_STATE, {
            "user": user.to_dict() if user else None,
            "rooms": list(self.rooms),
            "crash": self.crash_game.snapshot() if self.crash_game else None,
        })
        logger.info(f"[HUB] Connected {sid} ({conn.display_name}), total={len(self.connections)}")
        return conn

    async def unregister(self, sid: str):
        conn = self.connections.pop(sid, None)
        if conn is None:
            return

        if conn.writer and conn.writer is not asyncio.current_task():
            conn.writer.cancel()
            try:
                await conn.writer
            except asyncio.CancelledError:
                pass
        logger.info(
            f"[HUB] Disconnected {sid} ({conn.display_name}), dropped={conn.dropped}, "
            f"total={len(self.connections)}"
        )

    async def close(self):
        for sid in list(self.connections):
            await self.unregister(sid)

    async def _writer(self, conn: Connection):
        while True:
            payload = await conn.outbox.get()
            try:
                await self._sender(conn.sid, payload)
            except Exception as e:
                logger.warning(f"[HUB] Send to {conn.sid} failed, pruning: {e}")
                await self.unregister(conn.sid)
                return

    # =========================================================================
    # ENVÍO
    # =========================================================================

    def send(self, sid: str, message_type: Any, data: Optional[Dict[str, Any]] = None):
        conn = self.connections.get(sid)
        if conn:
            conn.enqueue(server_message(message_type, data))

    def send_error(self, sid: str, code: str, message: str):
        conn = self.connections.get(sid)
        if conn:
            conn.enqueue(error_message(code, message))

    async def broadcast(self, message: Dict[str, Any]):
        """Evento a todas las conexiones (eventos del Crash)."""
        payload = server_message(message["type"], message.get("data"))
        for conn in list(self.connections.values()):
            conn.enqueue(payload)

    async def broadcast_to_room(self, room: str, message_type: Any, data: Optional[Dict[str, Any]] = None):
        payload = server_message(message_type, data)
        for conn in list(self.connections.values()):
            if conn.room == room:
                conn.enqueue(payload)

    async def send_to_user(self, user_id: int, message: Dict[str, Any]):
        payload = server_message(message["type"], message.get("data"))
        for conn in list(self.connections.values()):
            if conn.user and conn.user.id == user_id:
                conn.enqueue(payload)

    # =========================================================================
    # DESPACHO
    # =========================================================================

    async def dispatch(self, sid: str, raw: Any):
        """Valida un frame entrante y lo entrega a su handler."""
        conn = self.connections.get(sid)
        if conn is None:
            return

        try:
            message = parse_client_message(raw)
        except ValidationError as e:
            unknown = any(err["type"] in ("union_tag_invalid", "union_tag_not_found") for err in e.errors())
            code = "UNKNOWN_MESSAGE" if unknown else "INVALID_MESSAGE"
            logger.debug(f"[HUB] Rejected frame from {sid}: {code}")
            self.send_error(sid, code, _first_error(e))
            return

        try:
            await self._handlers[message.type](conn, message)
        except CasinoError as e:
            self.send_error(sid, e.code, e.message)
        except Exception:
            logger.exception(f"[HUB] Handler {message.type} failed for {sid}")
            self.send_error(sid, "INTERNAL_ERROR", "Error interno del servidor")

    def _require_user(self, conn: Connection) -> UserAccount:
        if conn.user is None:
            raise NotAuthenticated("Debes iniciar sesión")
        return conn.user

    async def _on_join_room(self, conn: Connection, message: JoinRoom):
        room = message.data.room
        if room not in self.rooms:
            raise RoomNotFound(f"Sala desconocida: {room}")

        conn.room = room
        recent = await self.storage.recent_chat_messages(room, HubConfig.CHAT_HISTORY)
        self.send(conn.sid, ServerMessageType.ROOM_JOINED, {
            "room": room,
            "messages": [m.to_dict() for m in recent],
        })
        await self.broadcast_to_room(room, ServerMessageType.SYSTEM_MESSAGE, {
            "room": room,
            "content": f"{conn.display_name} se unió a la sala",
        })

    async def _on_chat_message(self, conn: Connection, message: ChatMessageIn):
        user = self._require_user(conn)
        room = message.data.room
        if room not in self.rooms:
            raise RoomNotFound(f"Sala desconocida: {room}")
        if conn.room != room:
            raise Forbidden("Únete a la sala antes de escribir")

        chat = await self.storage.create_chat_message(room, user.id, user.username, message.data.content)
        await self.broadcast_to_room(room, ServerMessageType.NEW_CHAT_MESSAGE, chat.to_dict())

    async def _on_moderate_message(self, conn: Connection, message: ModerateMessage):
        user = self._require_user(conn)
        if not conn.is_admin:
            raise Forbidden("Sólo los administradores pueden moderar")

        target = await self.storage.get_chat_message(message.data.message_id)
        if target is None:
            raise MessageNotFound(f"Mensaje {message.data.message_id} no encontrado")

        status = ModerationStatus.DELETED if message.data.action == "delete" else ModerationStatus.FLAGGED
        moderated = await self.storage.moderate_chat_message(target.id, status, user.id)
        logger.info(f"[HUB] Message {target.id} {status.value} by {user.username}")

        await self.broadcast_to_room(moderated.room, ServerMessageType.MESSAGE_MODERATED, {
            "messageId": moderated.id,
            "action": message.data.action,
            "status": moderated.status.value,
            "moderatedBy": user.id,
        })

    async def _on_place_bet(self, conn: Connection, message: PlaceBet):
        user = self._require_user(conn)
        receipt = await self.crash_game.place_bet(
            user.id,
            user.username,
            message.data.amount,
            message.data.auto_cashout_at,
        )
        self.send(conn.sid, ServerMessageType.BET_ACCEPTED, receipt)

    async def _on_cashout(self, conn: Connection, message: Cashout):
        user = self._require_user(conn)
        receipt = await self.crash_game.cashout(user.id, message.data.multiplier)
        self.send(conn.sid, ServerMessageType.CASHOUT_ACCEPTED, receipt)

    async def _on_play_game(self, conn: Connection, message: PlayGame):
        user = self._require_user(conn)
        result = await self.betting.submit_bet(
            user.id,
            message.data.game,
            message.data.amount,
            message.data.params,
        )
        self.send(conn.sid, ServerMessageType.GAME_RESULT, result)

    # =========================================================================
    # ESTADÍSTICAS
    # =========================================================================

    def stats(self) -> Dict[str, Any]:
        rooms: Dict[str, int] = {room: 0 for room in self.rooms}
        for conn in self.connections.values():
            if conn.room:
                rooms[conn.room] = rooms.get(conn.room, 0) + 1
        return {
            "connections": len(self.connections),
            "authenticated": sum(1 for c in self.connections.values() if c.user),
            "rooms": rooms,
            "droppedMessages": sum(c.dropped for c in self.connections.values()),
        }


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]
