"""
=============================================================================
EDUCASINO - Configuración
=============================================================================
Variables de entorno (prefijo EDUCASINO_) y archivo .env gestionados con
pydantic-settings. Las constantes propias de cada componente viven junto al
componente (CrashConfig, SocketConfig, SlotConfig...).
=============================================================================
"""

import logging
import secrets
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Configuración de la aplicación."""

    model_config = SettingsConfigDict(
        env_prefix="EDUCASINO_",
        env_file=".env",
        extra="ignore",
    )

    # Servidor
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # Persistencia: vacío = almacenamiento en memoria
    DATABASE_URL: str = ""

    # Provably Fair: el salt NUNCA se envía a los clientes
    SERVER_SALT: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Usuarios de demostración (la gestión de cuentas es externa)
    SEED_DEMO_USERS: bool = True

    def resolved_server_salt(self) -> str:
        """Retorna el salt configurado o genera uno efímero para el proceso."""
        if not self.SERVER_SALT:
            logger.warning(
                "[CONFIG] EDUCASINO_SERVER_SALT no configurado; usando salt efímero. "
                "Los crash points no serán auditables tras reiniciar el proceso."
            )
            self.SERVER_SALT = secrets.token_hex(32)
        return self.SERVER_SALT


@lru_cache
def get_settings() -> Settings:
    return Settings()
