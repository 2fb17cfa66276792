"""
=============================================================================
EDUCASINO - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Simulador educativo de casino: las probabilidades y la ventaja de la casa
son reales, el dinero no.

Integra:
- FastAPI para REST API (juegos instantáneos, historial, Crash)
- Socket.IO para la ronda compartida del Crash y el chat
- Middleware de seguridad y CORS
=============================================================================
"""

import logging
import time
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field

from .config import get_settings
from .errors import CasinoError, NotAuthenticated, RoundNotFound, UserNotFound
from .logging_config import setup_logging
from .messages import WireModel
from .storage import UserAccount
from .websocket_handler import CasinoRuntime, build_runtime, create_socket_app, install_runtime

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# =============================================================================
# LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestiona el ciclo de vida de la aplicación."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    logger.info("[EDUCASINO] Iniciando servidor...")
    runtime = build_runtime(settings)
    await runtime.start()
    app.state.runtime = runtime
    install_runtime(runtime)
    yield
    logger.info("[EDUCASINO] Cerrando servidor...")
    install_runtime(None)
    await runtime.stop()


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

app = FastAPI(
    title="EduCasino API",
    description="""
    ## Simulador educativo de casino

    ### Juegos:
    - **Slots**: grilla 3x3 con 10 líneas de pago
    - **Roulette**: rueda europea de un solo cero
    - **Dice**: tirada 1-100
    - **Crash**: ronda compartida en tiempo real (Socket.IO)

    ### Provably Fair (Crash):
    Cada ronda publica sha256(semilla + "next") antes de empezar y revela
    la semilla tras el quiebre.
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Agrega headers de seguridad a las respuestas."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# =============================================================================
# ERRORES
# =============================================================================

@app.exception_handler(CasinoError)
async def casino_error_handler(request: Request, exc: CasinoError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {"msg": "Solicitud inválida"}
    return JSONResponse(
        status_code=400,
        content={"code": "INVALID_PARAMETERS", "message": first["msg"]},
    )


# =============================================================================
# DEPENDENCIAS
# =============================================================================

def get_runtime(request: Request) -> CasinoRuntime:
    return request.app.state.runtime


async def current_user(
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
    runtime: CasinoRuntime = Depends(get_runtime)
) -> UserAccount:
    """
    Identidad del apostador. La sesión la gestiona un servicio externo que
    inyecta el header X-User-Id.
    """
    if x_user_id is None:
        raise NotAuthenticated("Falta el header X-User-Id")
    user = await runtime.storage.get_user(x_user_id)
    if user is None:
        raise UserNotFound(f"Usuario {x_user_id} no encontrado")
    return user


# =============================================================================
# SCHEMAS
# =============================================================================

class PlayRequest(WireModel):
    amount: Decimal = Field(..., gt=0)
    params: Dict[str, Any] = Field(default_factory=dict)


class CrashBetRequest(WireModel):
    amount: Decimal = Field(..., gt=0)
    auto_cashout_at: Optional[float] = Field(None, gt=1.0, allow_inf_nan=False)


class CrashCashoutRequest(WireModel):
    multiplier: Optional[float] = Field(None, ge=1.0, allow_inf_nan=False)


class VerifyRequest(WireModel):
    seed: str = Field(..., min_length=1, max_length=256)
    commitment: str = Field(..., min_length=64, max_length=64)
    crash_point: float = Field(..., ge=1.0, allow_inf_nan=False)


# =============================================================================
# ENDPOINTS - HEALTH & STATUS
# =============================================================================

@app.get("/health")
async def health_check():
    """Endpoint de health check para Docker y load balancers."""
    return {
        "status": "healthy",
        "service": "educasino-backend",
        "version": VERSION,
        "timestamp": time.time()
    }


@app.get("/")
async def root():
    """Endpoint raíz con información básica del servicio."""
    return {
        "message": "Bienvenido a EduCasino API",
        "docs": "/docs",
        "health": "/health",
        "websocket": "/socket.io",
        "version": VERSION
    }


@app.get("/api/v1/status")
async def server_status(runtime: CasinoRuntime = Depends(get_runtime)):
    """Estado detallado del servidor."""
    crash_round = runtime.crash_game.round
    return {
        "server": "online",
        "realtime": runtime.hub.stats(),
        "crash": {
            "roundId": crash_round.round_id if crash_round else None,
            "phase": crash_round.phase.value if crash_round else None,
            "loopRunning": runtime.crash_game.is_running,
        },
        "timestamp": time.time()
    }


# =============================================================================
# ENDPOINTS - JUEGOS
# =============================================================================

@app.get("/api/v1/games")
async def list_games(runtime: CasinoRuntime = Depends(get_runtime)):
    """Lista los juegos disponibles."""
    return {"games": [game.to_dict() for game in runtime.betting.list_games()]}


@app.get("/api/v1/games/{game}")
async def get_game(game: str, runtime: CasinoRuntime = Depends(get_runtime)):
    return runtime.betting.get_game(game).to_dict()


@app.post("/api/v1/play/{game}")
async def play_game(
    game: str,
    body: PlayRequest,
    user: UserAccount = Depends(current_user),
    runtime: CasinoRuntime = Depends(get_runtime)
):
    """Apuesta instantánea (slot, roulette, dice)."""
    return await runtime.betting.submit_bet(user.id, game, body.amount, body.params)


@app.get("/api/v1/balance")
async def get_balance(
    user: UserAccount = Depends(current_user),
    runtime: CasinoRuntime = Depends(get_runtime)
):
    balance = await runtime.storage.get_balance(user.id)
    return {"userId": user.id, "username": user.username, "balance": str(balance)}


@app.get("/api/v1/history")
async def get_history(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    game: Optional[str] = None,
    user: UserAccount = Depends(current_user),
    runtime: CasinoRuntime = Depends(get_runtime)
):
    entries = await runtime.storage.get_history(user.id, limit, offset, game)
    return {
        "history": [entry.to_dict() for entry in entries],
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/v1/statistics")
async def get_statistics(
    user: UserAccount = Depends(current_user),
    runtime: CasinoRuntime = Depends(get_runtime)
):
    return await runtime.storage.get_statistics(user.id)


# =============================================================================
# ENDPOINTS - CRASH
# =============================================================================

@app.get("/api/v1/crash/state")
async def crash_state(runtime: CasinoRuntime = Depends(get_runtime)):
    return runtime.crash_game.snapshot()


@app.post("/api/v1/crash/bet")
async def crash_bet(
    body: CrashBetRequest,
    user: UserAccount = Depends(current_user),
    runtime: CasinoRuntime = Depends(get_runtime)
):
    return await runtime.crash_game.place_bet(user.id, user.username, body.amount, body.auto_cashout_at)


@app.post("/api/v1/crash/cashout")
async def crash_cashout(
    body: Optional[CrashCashoutRequest] = None,
    user: UserAccount = Depends(current_user),
    runtime: CasinoRuntime = Depends(get_runtime)
):
    observed = body.multiplier if body else None
    return await runtime.crash_game.cashout(user.id, observed)


@app.get("/api/v1/crash/history")
async def crash_history(
    limit: int = Query(20, ge=1, le=100),
    runtime: CasinoRuntime = Depends(get_runtime)
):
    return {
        "history": runtime.crash_game.get_history(),
        "revealed": [r.to_dict() for r in runtime.fairness.recent_revealed(limit)],
    }


@app.get("/api/v1/crash/rounds/{round_id}")
async def crash_round(round_id: int, runtime: CasinoRuntime = Depends(get_runtime)):
    """Ronda resuelta con su semilla (las rondas en curso no se revelan)."""
    revealed = runtime.fairness.get_revealed(round_id)
    if revealed is None:
        raise RoundNotFound(f"Ronda {round_id} no encontrada o aún no revelada")
    return revealed.to_dict()


@app.post("/api/v1/crash/verify")
async def crash_verify(body: VerifyRequest, runtime: CasinoRuntime = Depends(get_runtime)):
    result = runtime.fairness.verify(body.seed, body.commitment, body.crash_point)
    return result.to_dict()


# =============================================================================
# MONTAR SOCKET.IO
# =============================================================================

# Socket.IO envuelve a FastAPI para que los upgrades de WebSocket funcionen
combined_app = create_socket_app(app)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("educasino.main:combined_app", host=settings.HOST, port=settings.PORT)
