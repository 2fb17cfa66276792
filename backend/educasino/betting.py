"""
=============================================================================
EDUCASINO - Servicio de Apuestas
=============================================================================
Catálogo de juegos y flujo de una apuesta instantánea (slot, ruleta, dados):

1. Validar monto y parámetros
2. Debitar el monto (atómico en el ledger)
3. Sortear el resultado
4. Acreditar el pago y registrar el historial

Si el sorteo falla (entropía no disponible) el monto se reembolsa y el
error se propaga. El Crash no pasa por aquí: usa su máquina de estados.
=============================================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .errors import GameUnavailable, InvalidBet
from .outcome_engines import (
    DiceBetType,
    GameKind,
    OutcomeResult,
    RouletteBetType,
    play_dice,
    play_roulette,
    play_slot,
    validate_stake,
)
from .random_source import SecureRandomSource, secure_random
from .storage import Storage

logger = logging.getLogger(__name__)


# =============================================================================
# CATÁLOGO
# =============================================================================

@dataclass(frozen=True)
class GameInfo:
    key: GameKind
    name: str
    description: str
    rtp: float
    popularity: int
    difficulty: str
    min_bet: Decimal = Decimal("0.01")
    max_bet: Decimal = Decimal("10000")
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.key.value,
            "name": self.name,
            "description": self.description,
            "rtp": self.rtp,
            "houseEdge": round(100 - self.rtp, 2),
            "popularity": self.popularity,
            "difficulty": self.difficulty,
            "minBet": str(self.min_bet),
            "maxBet": str(self.max_bet),
            "enabled": self.enabled,
        }


DEFAULT_CATALOG = (
    GameInfo(
        key=GameKind.SLOT,
        name="Slots",
        description="Grilla 3x3 con 10 líneas de pago y símbolos ponderados.",
        rtp=96.5,
        popularity=95,
        difficulty="Easy",
    ),
    GameInfo(
        key=GameKind.ROULETTE,
        name="Roulette",
        description="Ruleta europea de un solo cero.",
        rtp=97.3,
        popularity=88,
        difficulty="Medium",
    ),
    GameInfo(
        key=GameKind.DICE,
        name="Dice",
        description="Tirada 1-100 por encima, por debajo o exacta.",
        rtp=98.5,
        popularity=76,
        difficulty="Easy",
    ),
    GameInfo(
        key=GameKind.CRASH,
        name="Crash",
        description="Multiplicador compartido que crece hasta quebrar; retira antes.",
        rtp=97.0,
        popularity=92,
        difficulty="Hard",
    ),
)


# =============================================================================
# PARÁMETROS POR JUEGO
# =============================================================================

class GameParams(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class SlotParams(GameParams):
    pass


class RouletteParams(GameParams):
    bet_type: RouletteBetType
    bet_value: Optional[Union[int, str]] = None

    @model_validator(mode="after")
    def check_bet_value(self):
        if self.bet_type == RouletteBetType.NUMBER:
            if not isinstance(self.bet_value, int) or not 0 <= self.bet_value <= 36:
                raise ValueError("betValue debe ser un número entre 0 y 36")
        elif self.bet_type == RouletteBetType.COLOR:
            if self.bet_value not in ("red", "black", "green"):
                raise ValueError("betValue debe ser red, black o green")
        return self


class DiceParams(GameParams):
    bet_type: DiceBetType
    target: int = Field(ge=1, le=100)

    @model_validator(mode="after")
    def check_target(self):
        if self.bet_type == DiceBetType.OVER and self.target > 99:
            raise ValueError("Con 'over' el objetivo debe ser <= 99")
        if self.bet_type == DiceBetType.UNDER and self.target < 2:
            raise ValueError("Con 'under' el objetivo debe ser >= 2")
        return self


PARAM_MODELS = {
    GameKind.SLOT: SlotParams,
    GameKind.ROULETTE: RouletteParams,
    GameKind.DICE: DiceParams,
}


def to_stake(amount: Any) -> Decimal:
    try:
        return amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation:
        raise InvalidBet(f"Monto inválido: {amount}")


# =============================================================================
# SERVICIO
# =============================================================================

class BettingService:
    """Apuestas instantáneas contra el ledger de saldos."""

    def __init__(
        self,
        storage: Storage,
        rng: SecureRandomSource = secure_random,
        catalog: tuple = DEFAULT_CATALOG
    ):
        self.storage = storage
        self.rng = rng
        self.catalog: Dict[str, GameInfo] = {game.key.value: game for game in catalog}

    def list_games(self) -> List[GameInfo]:
        return list(self.catalog.values())

    def get_game(self, game: str) -> GameInfo:
        info = self.catalog.get(game)
        if info is None or not info.enabled:
            raise GameUnavailable(f"Juego no disponible: {game}")
        return info

    def parse_params(self, game: GameKind, params: Optional[Dict[str, Any]]) -> GameParams:
        try:
            return PARAM_MODELS[game].model_validate(params or {})
        except ValidationError as e:
            first = e.errors()[0]
            raise InvalidBet(f"Parámetros inválidos: {first['msg']}")

    def draw(self, game: GameKind, stake: Decimal, params: GameParams) -> OutcomeResult:
        if game == GameKind.SLOT:
            return play_slot(stake, self.rng)
        if game == GameKind.ROULETTE:
            return play_roulette(stake, params.bet_type, params.bet_value, self.rng)
        return play_dice(stake, params.bet_type, params.target, self.rng)

    async def submit_bet(
        self,
        user_id: int,
        game: str,
        amount: Any,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        info = self.get_game(game)
        if info.key == GameKind.CRASH:
            raise InvalidBet("El Crash se juega por rondas", code="USE_CRASH_ROUND")

        stake = validate_stake(to_stake(amount), info.min_bet, info.max_bet)
        parsed = self.parse_params(info.key, params)

        await self.storage.debit(user_id, stake)
        try:
            outcome = self.draw(info.key, stake, parsed)
        except Exception:
            await self.storage.credit(user_id, stake)
            logger.error(f"[BET] Draw failed for user {user_id} on {game}, stake refunded")
            raise

        if outcome.payout > 0:
            balance = await self.storage.credit(user_id, outcome.payout)
        else:
            balance = await self.storage.get_balance(user_id)

        record = await self.storage.record_game(
            user_id,
            info.key.value,
            stake,
            outcome.multiplier,
            outcome.payout,
            outcome.details,
        )

        logger.info(
            f"[BET] user={user_id} game={game} bet={stake} "
            f"x{outcome.multiplier:.2f} payout={outcome.payout}"
        )
        return {
            **outcome.to_dict(),
            "recordId": record.id,
            "balance": str(balance),
        }
