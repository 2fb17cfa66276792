"""
=============================================================================
EDUCASINO - Errores del Dominio
=============================================================================
Jerarquía de errores tipados. Cada error lleva un `code` estable que viaja
al cliente (mensaje `error` por WebSocket o JSON en la API REST).

Los errores de validación nunca mutan estado compartido: se rechazan de
forma síncrona y sólo se notifican a la conexión que los originó.
=============================================================================
"""

from typing import Any, Dict, Optional


class CasinoError(Exception):
    """Error base de la plataforma."""

    code = "CASINO_ERROR"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidBet(CasinoError):
    """Parámetros de apuesta malformados o fuera de rango."""
    code = "INVALID_PARAMETERS"


class InsufficientBalance(CasinoError):
    code = "INSUFFICIENT_BALANCE"


class GameUnavailable(CasinoError):
    code = "GAME_UNAVAILABLE"
    status_code = 404


class UserNotFound(CasinoError):
    code = "USER_NOT_FOUND"
    status_code = 404


class NotAuthenticated(CasinoError):
    code = "UNAUTHENTICATED"
    status_code = 401


class Forbidden(CasinoError):
    code = "FORBIDDEN"
    status_code = 403


class RoomNotFound(CasinoError):
    code = "ROOM_NOT_FOUND"
    status_code = 404


class MessageNotFound(CasinoError):
    code = "MESSAGE_NOT_FOUND"
    status_code = 404


class CrashGameError(CasinoError):
    """
    Rechazo de la máquina de estados del Crash.

    Apostar fuera de WAITING, retirar fuera de RUNNING o retirar dos veces
    son condiciones de carrera del cliente: se rechazan sin tocar el estado.
    """
    code = "CRASH_REJECTED"
    status_code = 409


class EntropyUnavailableError(CasinoError):
    """
    La fuente de entropía del sistema operativo falló.
    Es fatal para la solicitud en curso: nunca se sustituye por un
    generador no criptográfico.
    """
    code = "ENTROPY_UNAVAILABLE"
    status_code = 503


class RoundNotFound(CasinoError):
    """Ronda inexistente o aún sin revelar."""
    code = "ROUND_NOT_FOUND"
    status_code = 404
