"""
=============================================================================
EDUCASINO - Fuente de Aleatoriedad Segura
=============================================================================
Enteros y flotantes uniformes a partir de bytes criptográficos (CSPRNG del
sistema operativo).

Principios:
- Sin sesgo de módulo: muestreo por rechazo sobre el rango
- Sin fallback: si la entropía no está disponible, la solicitud falla
=============================================================================
"""

import secrets
from typing import Callable

from .errors import EntropyUnavailableError

MAX_UINT32 = 0xFFFFFFFF


class SecureRandomSource:
    """
    Fuente de números aleatorios uniforme.

    Args:
        byte_source: Callable que retorna `n` bytes aleatorios.
            Por defecto `secrets.token_bytes` (os.urandom).
    """

    def __init__(self, byte_source: Callable[[int], bytes] = secrets.token_bytes):
        self._byte_source = byte_source

    def random_bytes(self, count: int) -> bytes:
        """Lee `count` bytes de la fuente de entropía."""
        try:
            data = self._byte_source(count)
        except (OSError, NotImplementedError) as e:
            raise EntropyUnavailableError(
                f"Fuente de entropía no disponible: {e}"
            ) from e

        if len(data) != count:
            raise EntropyUnavailableError(
                f"Fuente de entropía agotada: se pidieron {count} bytes, llegaron {len(data)}"
            )
        return data

    def uniform_int(self, min_value: int, max_value: int) -> int:
        """
        Retorna un entero en [min_value, max_value) con distribución exacta.

        Se usa el menor número de bytes que cubre el rango y se descartan
        los valores que caen en el remanente sesgado:
        draw >= space - (space % range).
        """
        span = max_value - min_value
        if span <= 0:
            raise ValueError(f"Rango vacío: [{min_value}, {max_value})")

        byte_count = max(1, ((span - 1).bit_length() + 7) // 8)
        space = 256 ** byte_count
        cutoff = space - (space % span)

        while True:
            draw = int.from_bytes(self.random_bytes(byte_count), "big")
            if draw < cutoff:
                return min_value + draw % span

    def uniform_float01(self) -> float:
        """Flotante en [0, 1]: uint32 / 0xFFFFFFFF."""
        draw = int.from_bytes(self.random_bytes(4), "big")
        return draw / MAX_UINT32

    def token_hex(self, nbytes: int = 32) -> str:
        """Semilla hexadecimal (para rondas Provably Fair)."""
        return self.random_bytes(nbytes).hex()


# Instancia global
secure_random = SecureRandomSource()
