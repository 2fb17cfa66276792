"""
=============================================================================
EDUCASINO - Motores de Resultados
=============================================================================
Funciones puras que calculan el resultado de una apuesta a partir de la
fuente de aleatoriedad y de los parámetros ya validados.

Juegos:
- SLOT: grilla 3x3 con 10 líneas de pago
- ROULETTE: rueda europea (un solo cero)
- DICE: tirada 1-100 con house edge de 1.5%
- CRASH: punto de quiebre con house edge de 3% (variante verificable HMAC)
=============================================================================
"""

import hashlib
import hmac
import math
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import InvalidBet
from .random_source import SecureRandomSource


class GameKind(str, Enum):
    """Tipos de juego de la plataforma."""
    SLOT = "slot"
    ROULETTE = "roulette"
    DICE = "dice"
    CRASH = "crash"


CENT = Decimal("0.01")


@dataclass(frozen=True)
class OutcomeResult:
    """Resultado inmutable de una apuesta."""
    game: GameKind
    draws: Tuple[Any, ...]
    multiplier: float
    win: bool
    stake: Decimal
    payout: Decimal
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "game": self.game.value,
            "draws": list(self.draws),
            "multiplier": self.multiplier,
            "win": self.win,
            "bet": str(self.stake),
            "payout": str(self.payout),
            **self.details,
        }


def payout_for(stake: Decimal, multiplier: float) -> Decimal:
    """stake x multiplier truncado a centavos (la casa nunca paga de más)."""
    return (stake * Decimal(str(multiplier))).quantize(CENT, rounding=ROUND_DOWN)


def validate_stake(stake: Decimal, min_bet: Decimal, max_bet: Decimal) -> Decimal:
    """Monto positivo, en centavos y dentro de los límites de la mesa."""
    if not stake.is_finite():
        raise InvalidBet(f"Monto inválido: {stake}")
    if stake < min_bet or stake > max_bet:
        raise InvalidBet(f"La apuesta debe estar entre {min_bet} y {max_bet}")
    if stake != stake.quantize(CENT):
        raise InvalidBet(f"El monto admite como máximo 2 decimales: {stake}")
    return stake


# =============================================================================
# SLOT
# =============================================================================

class SlotConfig:
    """Símbolos, pesos y líneas del tragamonedas."""

    # Orden fijo: define la partición acumulada de pesos
    SYMBOLS = ("gem", "crown", "star", "dice", "money")

    WEIGHTS = {
        "gem": 15,
        "crown": 10,
        "star": 5,
        "dice": 3,
        "money": 8,
    }

    VALUES = {
        "gem": 10,
        "crown": 15,
        "star": 5,
        "dice": 3,
        "money": 8,
    }

    # Sólo estos símbolos pagan con 2 iguales
    HIGH_VALUE = frozenset({"gem", "crown", "money"})

    PARTIAL_FACTOR = 0.5


@dataclass(frozen=True)
class LinePattern:
    name: str
    positions: Tuple[int, int, int]
    base_multiplier: float


WINNING_PATTERNS: Tuple[LinePattern, ...] = (
    # Filas
    LinePattern("Top Row", (0, 1, 2), 1),
    LinePattern("Middle Row", (3, 4, 5), 1),
    LinePattern("Bottom Row", (6, 7, 8), 1),
    # Columnas
    LinePattern("Left Column", (0, 3, 6), 1),
    LinePattern("Middle Column", (1, 4, 7), 1),
    LinePattern("Right Column", (2, 5, 8), 1),
    # Diagonales
    LinePattern("Diagonal \\", (0, 4, 8), 1.5),
    LinePattern("Diagonal /", (2, 4, 6), 1.5),
    # V
    LinePattern("V-Shape Top", (0, 4, 2), 2),
    LinePattern("V-Shape Bottom", (6, 4, 8), 2),
)


@dataclass(frozen=True)
class WinningLine:
    name: str
    positions: Tuple[int, int, int]
    symbol: str
    matches: int
    multiplier: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "positions": list(self.positions),
            "symbol": self.symbol,
            "matches": self.matches,
            "multiplier": self.multiplier,
        }


def pick_weighted_symbol(rng: SecureRandomSource) -> str:
    """
    Selección ponderada: draw = uniform_float01() * total_weight y se
    elige el primer símbolo cuyo peso acumulado supera el draw.
    """
    total_weight = sum(SlotConfig.WEIGHTS.values())
    draw = rng.uniform_float01() * total_weight

    cumulative = 0
    for symbol in SlotConfig.SYMBOLS:
        cumulative += SlotConfig.WEIGHTS[symbol]
        if cumulative > draw:
            return symbol

    # draw == total_weight (uniform_float01 puede retornar 1.0)
    return SlotConfig.SYMBOLS[-1]


def evaluate_grid(flat_grid: Sequence[str]) -> Tuple[List[WinningLine], float]:
    """
    Evalúa las 10 líneas sobre la grilla aplanada (9 posiciones).

    - 3 iguales: base de la línea x valor del símbolo
    - exactamente 2 iguales de alto valor: base de la línea x 0.5
    Las ganancias se suman; cada línea se evalúa una sola vez.
    """
    if len(flat_grid) != 9:
        raise ValueError("La grilla debe tener 9 posiciones")

    winning_lines: List[WinningLine] = []
    total_multiplier = 0.0

    for pattern in WINNING_PATTERNS:
        line = [flat_grid[pos] for pos in pattern.positions]
        symbol, count = Counter(line).most_common(1)[0]

        if count == 3:
            line_multiplier = pattern.base_multiplier * SlotConfig.VALUES[symbol]
        elif count == 2 and symbol in SlotConfig.HIGH_VALUE:
            line_multiplier = pattern.base_multiplier * SlotConfig.PARTIAL_FACTOR
        else:
            continue

        winning_lines.append(WinningLine(
            name=pattern.name,
            positions=pattern.positions,
            symbol=symbol,
            matches=count,
            multiplier=line_multiplier,
        ))
        total_multiplier += line_multiplier

    return winning_lines, total_multiplier


def play_slot(stake: Decimal, rng: SecureRandomSource) -> OutcomeResult:
    """Gira la grilla 3x3 y evalúa las líneas."""
    flat_grid = [pick_weighted_symbol(rng) for _ in range(9)]
    winning_lines, total_multiplier = evaluate_grid(flat_grid)

    return OutcomeResult(
        game=GameKind.SLOT,
        draws=tuple(flat_grid),
        multiplier=total_multiplier,
        win=total_multiplier > 0,
        stake=stake,
        payout=payout_for(stake, total_multiplier),
        details={
            "gridSymbols": [flat_grid[0:3], flat_grid[3:6], flat_grid[6:9]],
            "winningLines": [line.to_dict() for line in winning_lines],
            "totalMultiplier": total_multiplier,
        },
    )


# =============================================================================
# RULETA
# =============================================================================

class RouletteBetType(str, Enum):
    NUMBER = "number"
    COLOR = "color"
    EVEN = "even"
    ODD = "odd"
    LOW = "low"
    HIGH = "high"


ROULETTE_PAYOUTS = {
    RouletteBetType.NUMBER: 36,
    RouletteBetType.COLOR: 2,
    RouletteBetType.EVEN: 2,
    RouletteBetType.ODD: 2,
    RouletteBetType.LOW: 2,
    RouletteBetType.HIGH: 2,
}

ROULETTE_COLORS = ("green", "red", "black")


def roulette_color(number: int) -> str:
    """
    Color de la mesa: 0 verde, par negro, impar rojo.
    No corresponde al mapa real de la ruleta; es la regla de esta mesa.
    """
    if number == 0:
        return "green"
    return "black" if number % 2 == 0 else "red"


def resolve_roulette(bet_type: RouletteBetType, bet_value: Optional[Any], number: int) -> bool:
    """Determina si la apuesta gana para el número dado."""
    is_zero = number == 0

    if bet_type == RouletteBetType.NUMBER:
        return number == int(bet_value)
    if bet_type == RouletteBetType.COLOR:
        return roulette_color(number) == bet_value
    if bet_type == RouletteBetType.EVEN:
        return not is_zero and number % 2 == 0
    if bet_type == RouletteBetType.ODD:
        return not is_zero and number % 2 == 1
    if bet_type == RouletteBetType.LOW:
        return 1 <= number <= 18
    if bet_type == RouletteBetType.HIGH:
        return 19 <= number <= 36

    raise InvalidBet(f"Tipo de apuesta de ruleta desconocido: {bet_type}")


def play_roulette(
    stake: Decimal,
    bet_type: RouletteBetType,
    bet_value: Optional[Any],
    rng: SecureRandomSource
) -> OutcomeResult:
    """Gira la rueda europea (0-36)."""
    number = rng.uniform_int(0, 37)
    win = resolve_roulette(bet_type, bet_value, number)
    multiplier = ROULETTE_PAYOUTS[bet_type] if win else 0

    return OutcomeResult(
        game=GameKind.ROULETTE,
        draws=(number,),
        multiplier=float(multiplier),
        win=win,
        stake=stake,
        payout=payout_for(stake, multiplier),
        details={
            "number": number,
            "color": roulette_color(number),
            "betType": bet_type.value,
            "betValue": bet_value,
        },
    )


# =============================================================================
# DADOS
# =============================================================================

class DiceBetType(str, Enum):
    OVER = "over"
    UNDER = "under"
    EXACT = "exact"


DICE_HOUSE_FACTOR = 0.985  # 1.5% house edge
DICE_EXACT_MULTIPLIER = 98.5


def dice_multiplier(bet_type: DiceBetType, target: int) -> float:
    """
    Multiplicador derivado de la probabilidad con 1.5% de ventaja,
    redondeado a 2 decimales.
    """
    if bet_type == DiceBetType.OVER:
        raw = 100 / (100 - target) * DICE_HOUSE_FACTOR
    elif bet_type == DiceBetType.UNDER:
        raw = 100 / target * DICE_HOUSE_FACTOR
    elif bet_type == DiceBetType.EXACT:
        raw = DICE_EXACT_MULTIPLIER
    else:
        raise InvalidBet(f"Tipo de apuesta de dados desconocido: {bet_type}")
    return round(raw, 2)


def resolve_dice(bet_type: DiceBetType, target: int, roll: int) -> bool:
    if bet_type == DiceBetType.OVER:
        return roll > target
    if bet_type == DiceBetType.UNDER:
        return roll < target
    return roll == target


def play_dice(
    stake: Decimal,
    bet_type: DiceBetType,
    target: int,
    rng: SecureRandomSource
) -> OutcomeResult:
    """Tirada 1-100 contra el objetivo."""
    roll = rng.uniform_int(1, 101)
    win = resolve_dice(bet_type, target, roll)
    multiplier = dice_multiplier(bet_type, target) if win else 0.0

    return OutcomeResult(
        game=GameKind.DICE,
        draws=(roll,),
        multiplier=multiplier,
        win=win,
        stake=stake,
        payout=payout_for(stake, multiplier),
        details={
            "diceRoll": roll,
            "target": target,
            "betType": bet_type.value,
            "winMultiplier": dice_multiplier(bet_type, target),
        },
    )


# =============================================================================
# CRASH
# =============================================================================

class CrashPointConfig:
    """Parámetros de la distribución del punto de quiebre."""
    INSTANT_BUST_PROBABILITY = 0.01
    HOUSE_FACTOR = 0.97          # 3% house edge
    MIN_CRASH_POINT = 1.00
    MAX_CRASH_POINT = 1000.00
    HASH_BITS = 52               # 13 caracteres hex


def crash_point_from_draw(draw: float) -> float:
    """
    Transformada inversa: floor(0.97 x 100 / (1 - draw) x 100) / 100,
    con 1% de masa en 1.00 (instant bust) y tope en 1000.00.
    """
    if draw < CrashPointConfig.INSTANT_BUST_PROBABILITY:
        return CrashPointConfig.MIN_CRASH_POINT
    if draw >= 1.0:
        return CrashPointConfig.MAX_CRASH_POINT

    # 0.97 x 100 x 100 = 9700; en enteros para evitar deriva de punto flotante
    scaled = round(CrashPointConfig.HOUSE_FACTOR * 100 * 100)
    crash_point = math.floor(scaled / (1 - draw)) / 100
    return min(crash_point, CrashPointConfig.MAX_CRASH_POINT)


def hmac_draw(server_salt: str, round_seed: str) -> float:
    """HMAC-SHA256(salt, seed): primeros 52 bits / 2^52, en [0, 1)."""
    digest = hmac.new(
        server_salt.encode("utf-8"),
        round_seed.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    hex_chars = CrashPointConfig.HASH_BITS // 4
    return int(digest[:hex_chars], 16) / (2 ** CrashPointConfig.HASH_BITS)


def crash_point_from_seed(round_seed: str, server_salt: str) -> float:
    """Variante verificable: mismo formato, draw derivado de la semilla."""
    return crash_point_from_draw(hmac_draw(server_salt, round_seed))


def generate_crash_point(rng: SecureRandomSource) -> float:
    """Variante no verificable: draw directo de la fuente segura, en [0, 1)."""
    draw = rng.uniform_int(0, 2 ** 32) / 2 ** 32
    return crash_point_from_draw(draw)
