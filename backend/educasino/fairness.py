"""
=============================================================================
EDUCASINO - Ledger de Provable Fairness
=============================================================================
Esquema de compromiso semilla/salt/hash para el Crash:

1. Antes de la ronda: semilla nueva, se publica sha256(semilla + "next")
2. El crash point se deriva de HMAC(server_salt, semilla)
3. Tras el quiebre se revela la semilla; cualquiera puede comprobar que su
   hash coincide con el compromiso publicado

El server_salt nunca sale del servidor: con él un cliente podría predecir
el crash point antes de que la ronda se resuelva.
=============================================================================
"""

import hashlib
import logging
import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .outcome_engines import crash_point_from_seed
from .random_source import SecureRandomSource

logger = logging.getLogger(__name__)

COMMITMENT_SUFFIX = "next"


@dataclass(frozen=True)
class RoundCommitment:
    """Compromiso de una ronda (la semilla queda oculta hasta el quiebre)."""
    round_id: int
    seed: str
    commitment: str
    crash_point: float
    created_at: float

    def public_view(self) -> Dict[str, Any]:
        return {
            "roundId": self.round_id,
            "commitment": self.commitment,
        }


@dataclass(frozen=True)
class RevealedRound:
    """Ronda resuelta con su semilla revelada."""
    round_id: int
    seed: str
    commitment: str
    crash_point: float
    revealed_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roundId": self.round_id,
            "seed": self.seed,
            "commitment": self.commitment,
            "crashPoint": self.crash_point,
            "revealedAt": self.revealed_at,
        }


@dataclass(frozen=True)
class VerificationResult:
    commitment_matches: bool
    crash_point_matches: bool
    recomputed_crash_point: float

    @property
    def is_valid(self) -> bool:
        return self.commitment_matches and self.crash_point_matches

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commitmentMatches": self.commitment_matches,
            "crashPointMatches": self.crash_point_matches,
            "recomputedCrashPoint": self.recomputed_crash_point,
            "valid": self.is_valid,
        }


def commitment_for(seed: str) -> str:
    """sha256(seed || "next") en hexadecimal."""
    return hashlib.sha256(f"{seed}{COMMITMENT_SUFFIX}".encode("utf-8")).hexdigest()


class ProvableFairnessLedger:
    """
    Genera compromisos por ronda y conserva las rondas reveladas
    (las N más recientes) para auditoría.
    """

    def __init__(
        self,
        server_salt: str,
        rng: SecureRandomSource,
        history_size: int = 100
    ):
        if not server_salt:
            raise ValueError("server_salt es obligatorio")
        self._server_salt = server_salt
        self._rng = rng
        self._history_size = history_size
        self._pending: Dict[str, RoundCommitment] = {}
        self._revealed: "OrderedDict[int, RevealedRound]" = OrderedDict()

    def new_round(self, round_id: int) -> RoundCommitment:
        """Semilla fresca + compromiso + crash point oculto."""
        seed = self._rng.token_hex(32)
        round_commitment = RoundCommitment(
            round_id=round_id,
            seed=seed,
            commitment=commitment_for(seed),
            crash_point=crash_point_from_seed(seed, self._server_salt),
            created_at=time.time(),
        )
        self._pending[round_commitment.commitment] = round_commitment
        logger.debug(f"[FAIRNESS] Round {round_id} committed: {round_commitment.commitment}")
        return round_commitment

    def reveal(self, commitment: str) -> RevealedRound:
        """Revela la semilla de una ronda ya resuelta."""
        round_commitment = self._pending.pop(commitment, None)
        if round_commitment is None:
            raise KeyError(f"Compromiso desconocido: {commitment}")

        revealed = RevealedRound(
            round_id=round_commitment.round_id,
            seed=round_commitment.seed,
            commitment=round_commitment.commitment,
            crash_point=round_commitment.crash_point,
            revealed_at=time.time(),
        )
        self._revealed[revealed.round_id] = revealed
        while len(self._revealed) > self._history_size:
            self._revealed.popitem(last=False)

        logger.info(
            f"[FAIRNESS] Round {revealed.round_id} revealed: "
            f"crash={revealed.crash_point:.2f}x"
        )
        return revealed

    def get_revealed(self, round_id: int) -> Optional[RevealedRound]:
        return self._revealed.get(round_id)

    def recent_revealed(self, limit: int = 20) -> List[RevealedRound]:
        return list(self._revealed.values())[-limit:][::-1]

    def verify(self, seed: str, commitment: str, crash_point: float) -> VerificationResult:
        """
        Recalcula compromiso y crash point a partir de la semilla revelada.
        """
        recomputed = crash_point_from_seed(seed, self._server_salt)
        return VerificationResult(
            commitment_matches=secrets.compare_digest(commitment_for(seed), commitment),
            crash_point_matches=recomputed == crash_point,
            recomputed_crash_point=recomputed,
        )
