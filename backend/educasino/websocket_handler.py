"""
=============================================================================
EDUCASINO - Manejador de WebSockets (Socket.IO)
=============================================================================
Capa delgada entre Socket.IO y el RealtimeHub. Todos los frames viajan por
un único evento `message` con la forma {type, data}.

Identidad: el cliente envía `auth={'user_id': N}` al conectar; el usuario
se resuelve contra el almacenamiento (la gestión de sesiones es externa).
Sin `auth` la conexión es anónima: puede observar y unirse a salas.
=============================================================================
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import socketio
from socketio import exceptions as sio_exceptions

from .betting import BettingService
from .config import Settings
from .crash_game import CrashConfig, CrashGame
from .fairness import ProvableFairnessLedger
from .random_source import SecureRandomSource, secure_random
from .realtime_hub import RealtimeHub, Sender
from .storage import DEFAULT_BALANCE, Storage, UserAccount, create_storage

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURACIÓN DEL SOCKET
# =============================================================================

class SocketConfig:
    """Configuración del servidor de WebSockets."""

    EVENT = "message"                # Evento único para todos los frames
    SOCKETIO_PATH = "socket.io"
    PING_INTERVAL = 25
    PING_TIMEOUT = 20


# =============================================================================
# SERVIDOR SOCKET.IO
# =============================================================================

sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins='*',
    ping_interval=SocketConfig.PING_INTERVAL,
    ping_timeout=SocketConfig.PING_TIMEOUT,
    logger=False,
    engineio_logger=False
)


async def emit_to_sid(sid: str, payload: Dict[str, Any]):
    await sio.emit(SocketConfig.EVENT, payload, to=sid)


# =============================================================================
# RUNTIME
# =============================================================================

@dataclass
class CasinoRuntime:
    """Componentes vivos del servidor, cableados entre sí."""
    settings: Settings
    storage: Storage
    fairness: ProvableFairnessLedger
    crash_game: CrashGame
    hub: RealtimeHub
    betting: BettingService

    async def start(self):
        await self.storage.init()
        if self.settings.SEED_DEMO_USERS:
            await seed_demo_users(self.storage)
        await self.crash_game.start()
        logger.info("[WS] Runtime started")

    async def stop(self):
        await self.crash_game.stop()
        await self.hub.close()
        await self.storage.close()
        logger.info("[WS] Runtime stopped")


def build_runtime(
    settings: Settings,
    storage: Optional[Storage] = None,
    rng: SecureRandomSource = secure_random,
    clock: Callable[[], float] = time.time,
    sender: Sender = emit_to_sid,
    crash_config: Optional[CrashConfig] = None
) -> CasinoRuntime:
    """Arma storage, fairness, crash, hub y apuestas."""
    storage = storage or create_storage(settings.DATABASE_URL)
    fairness = ProvableFairnessLedger(settings.resolved_server_salt(), rng)
    hub = RealtimeHub(sender, storage)
    crash_game = CrashGame(
        storage,
        fairness,
        config=crash_config,
        clock=clock,
        publish=hub.broadcast,
        notify=hub.send_to_user,
    )
    betting = BettingService(storage, rng)

    hub.crash_game = crash_game
    hub.betting = betting
    return CasinoRuntime(
        settings=settings,
        storage=storage,
        fairness=fairness,
        crash_game=crash_game,
        hub=hub,
        betting=betting,
    )


async def seed_demo_users(storage: Storage):
    """Usuarios de demostración para el entorno educativo."""
    await storage.get_or_create_user("demo", DEFAULT_BALANCE)
    await storage.get_or_create_user("admin", DEFAULT_BALANCE, is_admin=True)


_runtime: Optional[CasinoRuntime] = None


def install_runtime(runtime: Optional[CasinoRuntime]):
    global _runtime
    _runtime = runtime


def get_runtime() -> CasinoRuntime:
    if _runtime is None:
        raise RuntimeError("Runtime no inicializado")
    return _runtime


async def resolve_identity(storage: Storage, auth: Optional[dict]) -> Optional[UserAccount]:
    """
    Resuelve el usuario del payload `auth`. Sin `user_id` es anónimo;
    un id inválido o inexistente rechaza la conexión.
    """
    if not auth:
        return None

    raw_id = auth.get("user_id", auth.get("userId"))
    if raw_id is None:
        return None

    try:
        user_id = int(raw_id)
    except (TypeError, ValueError):
        raise sio_exceptions.ConnectionRefusedError("INVALID_USER_ID")

    user = await storage.get_user(user_id)
    if user is None:
        raise sio_exceptions.ConnectionRefusedError("USER_NOT_FOUND")
    return user


# =============================================================================
# EVENTOS
# =============================================================================

@sio.event
async def connect(sid: str, environ: dict, auth: dict = None):
    """Maneja nueva conexión WebSocket."""
    runtime = get_runtime()
    user = await resolve_identity(runtime.storage, auth)
    await runtime.hub.register(sid, user)


@sio.event
async def disconnect(sid: str, reason: Any = None):
    """Las apuestas del Crash siguen vivas aunque el jugador se desconecte."""
    await get_runtime().hub.unregister(sid)


@sio.event
async def message(sid: str, data: Any):
    await get_runtime().hub.dispatch(sid, data)


def create_socket_app(app) -> socketio.ASGIApp:
    """Envuelve la app FastAPI con Socket.IO."""
    return socketio.ASGIApp(sio, other_asgi_app=app, socketio_path=SocketConfig.SOCKETIO_PATH)
