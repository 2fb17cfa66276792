"""
=============================================================================
EDUCASINO - Máquina de Estados del Crash
=============================================================================
Ronda compartida por todos los jugadores:

    WAITING (7s) -> RUNNING -> CRASHED (3s) -> WAITING ...

- El multiplicador se recalcula desde el reloj: m(t) = 2^(t / 6.5)
- La ronda quiebra en cuanto m(t) >= crash_point
- Un solo escritor: todas las mutaciones ocurren dentro de la tarea del
  actor, que consume una cola de comandos y avanza el reloj cada tick.
  Los handlers encolan comandos y esperan su future.
=============================================================================
"""

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from .errors import CrashGameError, InvalidBet
from .fairness import ProvableFairnessLedger, RoundCommitment
from .outcome_engines import GameKind, payout_for, validate_stake
from .storage import Storage

logger = logging.getLogger(__name__)

Publisher = Callable[[Dict[str, Any]], Awaitable[None]]
Notifier = Callable[[int, Dict[str, Any]], Awaitable[None]]


# =============================================================================
# CONFIGURACIÓN
# =============================================================================

@dataclass
class CrashConfig:
    """Tiempos y límites del Crash (segundos)."""
    waiting_time: float = 7.0
    cooldown_time: float = 3.0
    tick_interval: float = 0.05
    broadcast_interval: float = 0.1
    doubling_time: float = 6.5
    history_size: int = 20
    max_crash_point: float = 1000.0
    min_bet: Decimal = Decimal("0.01")
    max_bet: Decimal = Decimal("10000")


class CrashPhase(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    CRASHED = "crashed"


def multiplier_at(elapsed: float, doubling_time: float = 6.5) -> float:
    """Crecimiento exponencial: se duplica cada `doubling_time` segundos."""
    return 2 ** (max(elapsed, 0.0) / doubling_time)


def floor_multiplier(value: float) -> float:
    """Multiplicador visible: truncado a 2 decimales."""
    return math.floor(value * 100) / 100


def _fail_stopped(future: asyncio.Future):
    if not future.done():
        future.set_exception(CrashGameError("El juego se detuvo", code="GAME_STOPPED"))


# =============================================================================
# ESTRUCTURAS DE DATOS
# =============================================================================

@dataclass
class ActiveWager:
    """Apuesta de un jugador en la ronda actual."""
    user_id: int
    username: str
    stake: Decimal
    auto_cashout_at: Optional[float] = None
    cashed_out: bool = False
    cashout_multiplier: Optional[float] = None
    payout: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "bet": str(self.stake),
            "autoCashoutAt": self.auto_cashout_at,
            "cashedOut": self.cashed_out,
            "cashoutMultiplier": self.cashout_multiplier,
            "payout": str(self.payout),
        }


@dataclass
class CrashRound:
    round_id: int
    commitment: RoundCommitment
    phase: CrashPhase
    phase_started_at: float
    started_at: Optional[float] = None
    crashed_at: Optional[float] = None
    current_multiplier: float = 1.0
    wagers: Dict[int, ActiveWager] = field(default_factory=dict)

    @property
    def crash_point(self) -> float:
        return self.commitment.crash_point


# =============================================================================
# MOTOR DEL CRASH
# =============================================================================

class CrashGame:
    """
    Máquina de estados + actor.

    Los métodos `apply_*` y `advance` mutan la ronda y sólo los llama la
    tarea del actor (o una prueba que controla el reloj). Los métodos
    públicos `place_bet`/`cashout` encolan un comando.

    Args:
        storage: BalanceLedger con historial (débito/crédito de apuestas).
        fairness: Ledger de compromisos.
        config: Tiempos y límites.
        clock: Reloj en segundos (inyectable en pruebas).
        publish: Difusión a todas las conexiones.
        notify: Mensaje personal a un usuario (auto-cashout).
    """

    def __init__(
        self,
        storage: Storage,
        fairness: ProvableFairnessLedger,
        config: Optional[CrashConfig] = None,
        clock: Callable[[], float] = time.time,
        publish: Optional[Publisher] = None,
        notify: Optional[Notifier] = None
    ):
        self.storage = storage
        self.fairness = fairness
        self.config = config or CrashConfig()
        self.clock = clock
        self.publish = publish
        self.notify = notify

        self.round: Optional[CrashRound] = None
        self.history: Deque[Dict[str, Any]] = deque(maxlen=self.config.history_size)

        self._round_counter = 0
        self._last_broadcast = 0.0
        self._commands: "asyncio.Queue[Tuple[Callable, tuple, asyncio.Future]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Ciclo de vida del actor
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self.is_running:
            return
        if self.round is None:
            await self.open_round(self.clock())
        self._task = asyncio.create_task(self.run(), name="crash-game")
        logger.info("[CRASH] Game loop started")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        # Comandos que nunca se procesarán
        while not self._commands.empty():
            _, _, future = self._commands.get_nowait()
            _fail_stopped(future)
        logger.info("[CRASH] Game loop stopped")

    async def run(self):
        """
        Bucle del actor: comando o tick, nunca ambos en paralelo.

        La lectura de la cola es una tarea persistente que sobrevive a los
        ticks, así un comando ya desencolado nunca se pierde. Si el actor se
        cancela, el comando en curso termina con GAME_STOPPED.
        """
        getter: Optional[asyncio.Task] = None
        in_flight: Optional[asyncio.Future] = None
        try:
            while True:
                if getter is None:
                    getter = asyncio.create_task(self._commands.get())
                done, _ = await asyncio.wait({getter}, timeout=self.config.tick_interval)
                if not done:
                    await self._safe_advance()
                    continue

                handler, args, in_flight = getter.result()
                getter = None

                await self._safe_advance()
                if not in_flight.done():
                    try:
                        result = await handler(*args)
                    except Exception as e:
                        in_flight.set_exception(e)
                    else:
                        in_flight.set_result(result)
                in_flight = None
        finally:
            if getter is not None:
                if getter.done() and not getter.cancelled():
                    _, _, in_flight = getter.result()
                else:
                    getter.cancel()
            if in_flight is not None:
                _fail_stopped(in_flight)

    async def _safe_advance(self):
        try:
            await self.advance(self.clock())
        except Exception:
            logger.exception("[CRASH] Tick failed")

    async def _submit(self, handler: Callable, *args) -> Any:
        if not self.is_running:
            raise CrashGameError("El juego de crash no está activo", code="GAME_STOPPED")
        future = asyncio.get_running_loop().create_future()
        await self._commands.put((handler, args, future))
        return await future

    # -------------------------------------------------------------------------
    # API pública (desde handlers)
    # -------------------------------------------------------------------------

    async def place_bet(
        self,
        user_id: int,
        username: str,
        stake: Decimal,
        auto_cashout_at: Optional[float] = None
    ) -> Dict[str, Any]:
        return await self._submit(self.apply_place_bet, user_id, username, stake, auto_cashout_at)

    async def cashout(self, user_id: int, observed: Optional[float] = None) -> Dict[str, Any]:
        return await self._submit(self.apply_cashout, user_id, observed)

    # -------------------------------------------------------------------------
    # Comandos (sólo el actor)
    # -------------------------------------------------------------------------

    async def apply_place_bet(
        self,
        user_id: int,
        username: str,
        stake: Decimal,
        auto_cashout_at: Optional[float] = None
    ) -> Dict[str, Any]:
        current = self.round
        if current is None or current.phase != CrashPhase.WAITING:
            raise CrashGameError("Las apuestas están cerradas", code="BETTING_CLOSED")
        if user_id in current.wagers:
            raise CrashGameError("Ya tienes una apuesta en esta ronda", code="DUPLICATE_BET")

        validate_stake(stake, self.config.min_bet, self.config.max_bet)
        if auto_cashout_at is not None and not (math.isfinite(auto_cashout_at) and auto_cashout_at > 1.0):
            raise InvalidBet("El auto-cashout debe ser mayor a 1.00x")

        balance = await self.storage.debit(user_id, stake)

        wager = ActiveWager(
            user_id=user_id,
            username=username,
            stake=stake,
            auto_cashout_at=auto_cashout_at,
        )
        current.wagers[user_id] = wager
        logger.info(
            f"[CRASH] Round {current.round_id}: {username} bet {stake}"
            + (f" (auto {auto_cashout_at:.2f}x)" if auto_cashout_at else "")
        )

        await self._publish_active_bets()
        return {
            "roundId": current.round_id,
            **wager.to_dict(),
            "balance": str(balance),
        }

    async def apply_cashout(self, user_id: int, observed: Optional[float] = None) -> Dict[str, Any]:
        current = self.round
        if current is None or current.phase != CrashPhase.RUNNING:
            raise CrashGameError("La ronda no está en curso", code="NOT_RUNNING")

        wager = current.wagers.get(user_id)
        if wager is None:
            raise CrashGameError("No tienes apuesta en esta ronda", code="NO_ACTIVE_WAGER")
        if wager.cashed_out:
            raise CrashGameError("Ya retiraste en esta ronda", code="ALREADY_CASHED_OUT")
        if observed is not None and not (math.isfinite(observed) and observed >= 1.0):
            raise InvalidBet(f"Multiplicador observado inválido: {observed}")

        # El servidor es autoritativo: nunca se paga más de lo que él calculó
        multiplier = current.current_multiplier
        if observed is not None:
            multiplier = min(observed, multiplier)

        return await self._settle_cashout(current, wager, multiplier, auto=False)

    async def _settle_cashout(
        self,
        current: CrashRound,
        wager: ActiveWager,
        multiplier: float,
        auto: bool
    ) -> Dict[str, Any]:
        payout = payout_for(wager.stake, multiplier)
        balance = await self.storage.credit(wager.user_id, payout)

        # Sólo se marca tras acreditar; un fallo deja la apuesta abierta
        wager.cashed_out = True
        wager.cashout_multiplier = multiplier
        wager.payout = payout

        await self.storage.record_game(
            wager.user_id,
            GameKind.CRASH.value,
            wager.stake,
            multiplier,
            wager.payout,
            {
                "roundId": current.round_id,
                "cashoutMultiplier": multiplier,
                "autoCashout": auto,
            },
        )

        logger.info(
            f"[CRASH] Round {current.round_id}: {wager.username} cashed out "
            f"at {multiplier:.2f}x ({wager.payout})"
        )

        receipt = {
            "roundId": current.round_id,
            **wager.to_dict(),
            "auto": auto,
            "balance": str(balance),
        }
        if auto and self.notify:
            await self.notify(wager.user_id, {"type": "cashoutAccepted", "data": receipt})
        await self._publish_active_bets()
        return receipt

    # -------------------------------------------------------------------------
    # Reloj
    # -------------------------------------------------------------------------

    async def advance(self, now: float):
        """Lleva la ronda al instante `now`."""
        current = self.round
        if current is None:
            return

        if current.phase == CrashPhase.WAITING:
            if now - current.phase_started_at >= self.config.waiting_time:
                await self._begin_running(current, now)

        if current.phase == CrashPhase.RUNNING:
            await self._update_running(current, now)
        elif current.phase == CrashPhase.CRASHED:
            if now - current.crashed_at >= self.config.cooldown_time:
                await self.open_round(now)

    async def open_round(self, now: float) -> CrashRound:
        self._round_counter += 1
        commitment = self.fairness.new_round(self._round_counter)
        self.round = CrashRound(
            round_id=self._round_counter,
            commitment=commitment,
            phase=CrashPhase.WAITING,
            phase_started_at=now,
        )
        logger.info(f"[CRASH] Round {self._round_counter} open for bets")

        await self._publish({
            "type": "waitingForNext",
            "data": {
                **commitment.public_view(),
                "countdown": self.config.waiting_time,
            },
        })
        return self.round

    async def _begin_running(self, current: CrashRound, now: float):
        current.phase = CrashPhase.RUNNING
        current.phase_started_at = now
        current.started_at = now
        current.current_multiplier = 1.0
        self._last_broadcast = now
        logger.info(f"[CRASH] Round {current.round_id} started ({len(current.wagers)} bets)")

        await self._publish({
            "type": "gameStart",
            "data": {
                **current.commitment.public_view(),
                "startedAt": now,
            },
        })

    async def _update_running(self, current: CrashRound, now: float):
        raw = multiplier_at(now - current.started_at, self.config.doubling_time)

        # Auto-cashouts alcanzados antes del quiebre
        for wager in list(current.wagers.values()):
            threshold = wager.auto_cashout_at
            if wager.cashed_out or threshold is None:
                continue
            if threshold < current.crash_point and threshold <= raw:
                await self._settle_cashout(current, wager, threshold, auto=True)

        if raw >= current.crash_point:
            await self._crash(current, now)
            return

        current.current_multiplier = floor_multiplier(raw)
        if now - self._last_broadcast >= self.config.broadcast_interval:
            self._last_broadcast = now
            await self._publish({
                "type": "multiplierUpdate",
                "data": {
                    "roundId": current.round_id,
                    "multiplier": current.current_multiplier,
                    "elapsed": round(now - current.started_at, 3),
                },
            })

    async def _crash(self, current: CrashRound, now: float):
        current.phase = CrashPhase.CRASHED
        current.phase_started_at = now
        current.crashed_at = now
        current.current_multiplier = current.crash_point

        revealed = self.fairness.reveal(current.commitment.commitment)
        self.history.appendleft({
            "roundId": current.round_id,
            "crashPoint": current.crash_point,
            "timestamp": now,
        })

        losers = [w for w in current.wagers.values() if not w.cashed_out]
        for wager in losers:
            await self.storage.record_game(
                wager.user_id,
                GameKind.CRASH.value,
                wager.stake,
                0.0,
                Decimal("0"),
                {
                    "roundId": current.round_id,
                    "crashPoint": current.crash_point,
                },
            )

        logger.info(
            f"[CRASH] Round {current.round_id} crashed at {current.crash_point:.2f}x "
            f"({len(losers)} losing bets)"
        )

        await self._publish({
            "type": "gameCrash",
            "data": {
                **revealed.to_dict(),
                "history": self.get_history(),
            },
        })

    # -------------------------------------------------------------------------
    # Consultas
    # -------------------------------------------------------------------------

    def get_history(self) -> List[Dict[str, Any]]:
        return list(self.history)

    def active_bets(self) -> List[Dict[str, Any]]:
        if self.round is None:
            return []
        return [w.to_dict() for w in self.round.wagers.values()]

    def snapshot(self) -> Dict[str, Any]:
        """Estado completo para quien se conecta a mitad de ronda."""
        current = self.round
        if current is None:
            return {"phase": None, "history": self.get_history(), "activeBets": []}

        now = self.clock()
        state: Dict[str, Any] = {
            "roundId": current.round_id,
            "phase": current.phase.value,
            "commitment": current.commitment.commitment,
            "multiplier": current.current_multiplier,
            "activeBets": self.active_bets(),
            "history": self.get_history(),
        }
        if current.phase == CrashPhase.WAITING:
            remaining = self.config.waiting_time - (now - current.phase_started_at)
            state["countdown"] = round(max(remaining, 0.0), 2)
        elif current.phase == CrashPhase.RUNNING:
            state["elapsed"] = round(now - current.started_at, 3)
        else:
            state["crashPoint"] = current.crash_point
            revealed = self.fairness.get_revealed(current.round_id)
            if revealed:
                state["seed"] = revealed.seed
        return state

    async def _publish_active_bets(self):
        await self._publish({
            "type": "activeBetsUpdate",
            "data": {
                "roundId": self.round.round_id if self.round else None,
                "bets": self.active_bets(),
            },
        })

    async def _publish(self, message: Dict[str, Any]):
        if self.publish:
            await self.publish(message)
