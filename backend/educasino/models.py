"""
=============================================================================
EDUCASINO - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Tablas del almacenamiento persistente: usuarios con saldo, historial de
apuestas y mensajes de chat.

Principios de Diseño:
- Integridad Financiera: el saldo nunca puede ser negativo (CHECK)
- Débito atómico: UPDATE condicional, nunca leer-y-escribir
=============================================================================
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# =============================================================================
# ENUMERACIONES
# =============================================================================

class GameOutcome(str, PyEnum):
    """Resultado registrado en el historial."""
    WIN = "win"
    LOSS = "loss"


class ModerationStatus(str, PyEnum):
    """Estado de moderación de un mensaje de chat."""
    VISIBLE = "visible"
    FLAGGED = "flagged"
    DELETED = "deleted"


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: USERS
# =============================================================================

class User(Base):
    """Usuario con saldo educativo (moneda ficticia)."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    # Precisión: Numeric(14, 2)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        default=Decimal("10000.00"),
        nullable=False
    )

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    game_records: Mapped[List["GameRecord"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="check_positive_balance"),
    )


# =============================================================================
# TABLA: GAME_RECORDS (Historial de apuestas)
# =============================================================================

class GameRecord(Base):
    """Apuesta resuelta (slot, ruleta, dados o crash)."""
    __tablename__ = "game_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False
    )
    game: Mapped[str] = mapped_column(String(16), nullable=False)

    bet: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    payout: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    result: Mapped[GameOutcome] = mapped_column(Enum(GameOutcome), nullable=False)

    # JSON serializado con el detalle del juego
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="game_records")

    __table_args__ = (
        Index("idx_game_records_user_id", "user_id"),
        Index("idx_game_records_game", "game"),
        CheckConstraint("bet > 0", name="check_positive_bet"),
        CheckConstraint("payout >= 0", name="check_positive_payout"),
    )


# =============================================================================
# TABLA: CHAT_MESSAGES
# =============================================================================

class ChatMessageRow(Base):
    """Mensaje de chat de una sala."""
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    room: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False
    )
    username: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[ModerationStatus] = mapped_column(
        Enum(ModerationStatus),
        default=ModerationStatus.VISIBLE,
        nullable=False
    )
    moderated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_chat_messages_room", "room"),
    )
