"""
=============================================================================
EDUCASINO - Almacenamiento y Balance Ledger
=============================================================================
Colaborador externo del núcleo: saldos, historial de apuestas y chat.

- BalanceLedger: débito/crédito atómico por usuario
- MemoryStorage: diccionarios en memoria (desarrollo y pruebas)
- SqlStorage: SQLAlchemy async (PostgreSQL / SQLite)

Regla: el débito nunca deja el saldo negativo. Dos débitos concurrentes del
mismo usuario se serializan (lock por usuario en memoria, UPDATE condicional
en SQL).
=============================================================================
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from .errors import InsufficientBalance, InvalidBet, MessageNotFound, UserNotFound
from .models import Base, ChatMessageRow, GameOutcome, GameRecord, ModerationStatus, User

logger = logging.getLogger(__name__)

DEFAULT_BALANCE = Decimal("10000.00")
ZERO = Decimal("0")


# =============================================================================
# ESTRUCTURAS DE DATOS
# =============================================================================

@dataclass(frozen=True)
class UserAccount:
    id: int
    username: str
    balance: Decimal
    is_admin: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "balance": str(self.balance),
            "isAdmin": self.is_admin,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class GameHistoryEntry:
    id: int
    user_id: int
    game: str
    bet: Decimal
    multiplier: float
    payout: Decimal
    result: str
    details: Dict[str, Any]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "game": self.game,
            "bet": str(self.bet),
            "multiplier": self.multiplier,
            "payout": str(self.payout),
            "result": self.result,
            "details": self.details,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ChatMessage:
    id: int
    room: str
    user_id: int
    username: str
    content: str
    status: ModerationStatus
    created_at: datetime
    moderated_by: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "room": self.room,
            "userId": self.user_id,
            "username": self.username,
            "content": self.content,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }


def build_statistics(records: List[GameHistoryEntry]) -> Dict[str, Any]:
    """
    Estadísticas de un usuario: total apostado, ganado, RTP observado y
    desglose por juego.
    """
    def summarize(entries: List[GameHistoryEntry]) -> Dict[str, Any]:
        total_bet = sum((e.bet for e in entries), ZERO)
        total_payout = sum((e.payout for e in entries), ZERO)
        return {
            "totalBet": total_bet,
            "totalPayout": total_payout,
            "profit": total_payout - total_bet,
            "rtp": float(total_payout / total_bet * 100) if total_bet > 0 else 0.0,
            "count": len(entries),
        }

    overall = summarize(records)
    games_played = overall["count"]

    by_game: Dict[str, List[GameHistoryEntry]] = defaultdict(list)
    for record in records:
        by_game[record.game].append(record)

    game_stats = []
    for game, entries in by_game.items():
        stats = summarize(entries)
        game_stats.append({
            "type": game,
            "totalBet": str(stats["totalBet"]),
            "totalPayout": str(stats["totalPayout"]),
            "profit": str(stats["profit"]),
            "rtp": round(stats["rtp"], 2),
            "count": stats["count"],
        })

    avg_bet = (overall["totalBet"] / games_played).quantize(Decimal("0.01")) if games_played else ZERO

    return {
        "totalWagered": str(overall["totalBet"]),
        "totalWon": str(overall["totalPayout"]),
        "profitLoss": str(overall["profit"]),
        "rtp": round(overall["rtp"], 2),
        "gamesPlayed": games_played,
        "avgBet": str(avg_bet),
        "gameStats": game_stats,
    }


def _check_amount(amount: Decimal, allow_zero: bool = False):
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidBet(f"Monto inválido: {amount}")


# =============================================================================
# INTERFACES
# =============================================================================

class BalanceLedger(ABC):
    """Débito y crédito atómicos por usuario."""

    @abstractmethod
    async def get_balance(self, user_id: int) -> Decimal:
        ...

    @abstractmethod
    async def debit(self, user_id: int, amount: Decimal) -> Decimal:
        """Descuenta `amount`; rechaza con InsufficientBalance si no alcanza."""

    @abstractmethod
    async def credit(self, user_id: int, amount: Decimal) -> Decimal:
        """Acredita `amount` y retorna el nuevo saldo."""


class Storage(BalanceLedger):
    """Usuarios, historial y chat sobre un BalanceLedger."""

    async def init(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        ...

    @abstractmethod
    async def create_user(
        self,
        username: str,
        balance: Decimal = DEFAULT_BALANCE,
        is_admin: bool = False
    ) -> UserAccount:
        ...

    @abstractmethod
    async def record_game(
        self,
        user_id: int,
        game: str,
        bet: Decimal,
        multiplier: float,
        payout: Decimal,
        details: Optional[Dict[str, Any]] = None
    ) -> GameHistoryEntry:
        ...

    @abstractmethod
    async def get_history(
        self,
        user_id: int,
        limit: int = 10,
        offset: int = 0,
        game: Optional[str] = None
    ) -> List[GameHistoryEntry]:
        """Historial más reciente primero."""

    @abstractmethod
    async def all_records(self, user_id: int) -> List[GameHistoryEntry]:
        ...

    async def get_statistics(self, user_id: int) -> Dict[str, Any]:
        return build_statistics(await self.all_records(user_id))

    @abstractmethod
    async def create_chat_message(
        self,
        room: str,
        user_id: int,
        username: str,
        content: str
    ) -> ChatMessage:
        ...

    @abstractmethod
    async def get_chat_message(self, message_id: int) -> Optional[ChatMessage]:
        ...

    @abstractmethod
    async def moderate_chat_message(
        self,
        message_id: int,
        status: ModerationStatus,
        moderator_id: int
    ) -> ChatMessage:
        ...

    @abstractmethod
    async def recent_chat_messages(self, room: str, limit: int = 50) -> List[ChatMessage]:
        """Mensajes no eliminados de la sala, del más antiguo al más nuevo."""

    async def get_or_create_user(
        self,
        username: str,
        balance: Decimal = DEFAULT_BALANCE,
        is_admin: bool = False
    ) -> UserAccount:
        existing = await self.get_user_by_username(username)
        if existing:
            return existing
        return await self.create_user(username, balance, is_admin)


# =============================================================================
# ALMACENAMIENTO EN MEMORIA
# =============================================================================

class MemoryStorage(Storage):
    """Almacenamiento en memoria con lock por usuario."""

    def __init__(self):
        self.users: Dict[int, UserAccount] = {}
        self.records: List[GameHistoryEntry] = []
        self.chat_messages: Dict[int, ChatMessage] = {}

        self._user_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._next_user_id = 1
        self._next_record_id = 1
        self._next_message_id = 1

    def _require_user(self, user_id: int) -> UserAccount:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFound(f"Usuario {user_id} no encontrado")
        return user

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        return self.users.get(user_id)

    async def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        wanted = username.lower()
        for user in self.users.values():
            if user.username.lower() == wanted:
                return user
        return None

    async def create_user(
        self,
        username: str,
        balance: Decimal = DEFAULT_BALANCE,
        is_admin: bool = False
    ) -> UserAccount:
        if await self.get_user_by_username(username):
            raise InvalidBet(f"El usuario {username} ya existe", code="USERNAME_TAKEN")

        user = UserAccount(
            id=self._next_user_id,
            username=username,
            balance=Decimal(balance),
            is_admin=is_admin,
        )
        self._next_user_id += 1
        self.users[user.id] = user
        return user

    async def get_balance(self, user_id: int) -> Decimal:
        return self._require_user(user_id).balance

    async def debit(self, user_id: int, amount: Decimal) -> Decimal:
        _check_amount(amount)
        async with self._user_locks[user_id]:
            user = self._require_user(user_id)
            if user.balance < amount:
                raise InsufficientBalance(
                    f"Saldo insuficiente. Disponible: {user.balance}"
                )
            user = replace(user, balance=user.balance - amount)
            self.users[user_id] = user
            return user.balance

    async def credit(self, user_id: int, amount: Decimal) -> Decimal:
        _check_amount(amount, allow_zero=True)
        async with self._user_locks[user_id]:
            user = self._require_user(user_id)
            user = replace(user, balance=user.balance + amount)
            self.users[user_id] = user
            return user.balance

    async def record_game(
        self,
        user_id: int,
        game: str,
        bet: Decimal,
        multiplier: float,
        payout: Decimal,
        details: Optional[Dict[str, Any]] = None
    ) -> GameHistoryEntry:
        entry = GameHistoryEntry(
            id=self._next_record_id,
            user_id=user_id,
            game=game,
            bet=bet,
            multiplier=multiplier,
            payout=payout,
            result=(GameOutcome.WIN if payout > 0 else GameOutcome.LOSS).value,
            details=details or {},
            created_at=datetime.now(timezone.utc),
        )
        self._next_record_id += 1
        self.records.append(entry)
        return entry

    async def get_history(
        self,
        user_id: int,
        limit: int = 10,
        offset: int = 0,
        game: Optional[str] = None
    ) -> List[GameHistoryEntry]:
        entries = [
            r for r in reversed(self.records)
            if r.user_id == user_id and (game is None or r.game == game)
        ]
        return entries[offset:offset + limit]

    async def all_records(self, user_id: int) -> List[GameHistoryEntry]:
        return [r for r in self.records if r.user_id == user_id]

    async def create_chat_message(
        self,
        room: str,
        user_id: int,
        username: str,
        content: str
    ) -> ChatMessage:
        message = ChatMessage(
            id=self._next_message_id,
            room=room,
            user_id=user_id,
            username=username,
            content=content,
            status=ModerationStatus.VISIBLE,
            created_at=datetime.now(timezone.utc),
        )
        self._next_message_id += 1
        self.chat_messages[message.id] = message
        return message

    async def get_chat_message(self, message_id: int) -> Optional[ChatMessage]:
        return self.chat_messages.get(message_id)

    async def moderate_chat_message(
        self,
        message_id: int,
        status: ModerationStatus,
        moderator_id: int
    ) -> ChatMessage:
        message = self.chat_messages.get(message_id)
        if message is None:
            raise MessageNotFound(f"Mensaje {message_id} no encontrado")
        message = replace(message, status=status, moderated_by=moderator_id)
        self.chat_messages[message_id] = message
        return message

    async def recent_chat_messages(self, room: str, limit: int = 50) -> List[ChatMessage]:
        messages = [
            m for m in self.chat_messages.values()
            if m.room == room and m.status != ModerationStatus.DELETED
        ]
        return messages[-limit:]


# =============================================================================
# ALMACENAMIENTO SQL (SQLAlchemy async)
# =============================================================================

def _to_account(row: User) -> UserAccount:
    return UserAccount(
        id=row.id,
        username=row.username,
        balance=Decimal(row.balance),
        is_admin=row.is_admin,
        created_at=row.created_at,
    )


def _to_entry(row: GameRecord) -> GameHistoryEntry:
    return GameHistoryEntry(
        id=row.id,
        user_id=row.user_id,
        game=row.game,
        bet=Decimal(row.bet),
        multiplier=row.multiplier,
        payout=Decimal(row.payout),
        result=row.result.value,
        details=json.loads(row.details) if row.details else {},
        created_at=row.created_at,
    )


def _to_message(row: ChatMessageRow) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        room=row.room,
        user_id=row.user_id,
        username=row.username,
        content=row.content,
        status=row.status,
        created_at=row.created_at,
        moderated_by=row.moderated_by,
    )


class SqlStorage(Storage):
    """
    Almacenamiento persistente.

    El débito es un UPDATE condicional dentro de una transacción:
        UPDATE users SET balance = balance - :amount
        WHERE id = :user_id AND balance >= :amount
    Si no afecta filas, el saldo no alcanza (o el usuario no existe).
    """

    def __init__(self, database_url: str, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_async_engine(database_url, pool_pre_ping=True)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("[STORAGE] SQL schema ready")

    async def close(self):
        await self.engine.dispose()

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        async with self.Session() as session:
            row = await session.get(User, user_id)
            return _to_account(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        async with self.Session() as session:
            result = await session.execute(
                select(User).where(User.username == username)
            )
            row = result.scalar_one_or_none()
            return _to_account(row) if row else None

    async def create_user(
        self,
        username: str,
        balance: Decimal = DEFAULT_BALANCE,
        is_admin: bool = False
    ) -> UserAccount:
        if await self.get_user_by_username(username):
            raise InvalidBet(f"El usuario {username} ya existe", code="USERNAME_TAKEN")

        async with self.Session.begin() as session:
            row = User(username=username, balance=Decimal(balance), is_admin=is_admin)
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return _to_account(row)

    async def get_balance(self, user_id: int) -> Decimal:
        async with self.Session() as session:
            result = await session.execute(select(User.balance).where(User.id == user_id))
            balance = result.scalar_one_or_none()
            if balance is None:
                raise UserNotFound(f"Usuario {user_id} no encontrado")
            return Decimal(balance)

    async def debit(self, user_id: int, amount: Decimal) -> Decimal:
        _check_amount(amount)
        async with self.Session.begin() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id, User.balance >= amount)
                .values(balance=User.balance - amount)
            )
            if result.rowcount == 0:
                current = await session.execute(select(User.balance).where(User.id == user_id))
                balance = current.scalar_one_or_none()
                if balance is None:
                    raise UserNotFound(f"Usuario {user_id} no encontrado")
                raise InsufficientBalance(f"Saldo insuficiente. Disponible: {balance}")

            new_balance = await session.execute(select(User.balance).where(User.id == user_id))
            return Decimal(new_balance.scalar_one())

    async def credit(self, user_id: int, amount: Decimal) -> Decimal:
        _check_amount(amount, allow_zero=True)
        async with self.Session.begin() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(balance=User.balance + amount)
            )
            if result.rowcount == 0:
                raise UserNotFound(f"Usuario {user_id} no encontrado")
            new_balance = await session.execute(select(User.balance).where(User.id == user_id))
            return Decimal(new_balance.scalar_one())

    async def record_game(
        self,
        user_id: int,
        game: str,
        bet: Decimal,
        multiplier: float,
        payout: Decimal,
        details: Optional[Dict[str, Any]] = None
    ) -> GameHistoryEntry:
        async with self.Session.begin() as session:
            row = GameRecord(
                user_id=user_id,
                game=game,
                bet=bet,
                multiplier=multiplier,
                payout=payout,
                result=GameOutcome.WIN if payout > 0 else GameOutcome.LOSS,
                details=json.dumps(details or {}, default=str),
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return _to_entry(row)

    async def get_history(
        self,
        user_id: int,
        limit: int = 10,
        offset: int = 0,
        game: Optional[str] = None
    ) -> List[GameHistoryEntry]:
        query = select(GameRecord).where(GameRecord.user_id == user_id)
        if game:
            query = query.where(GameRecord.game == game)
        query = query.order_by(GameRecord.id.desc()).offset(offset).limit(limit)

        async with self.Session() as session:
            result = await session.execute(query)
            return [_to_entry(row) for row in result.scalars().all()]

    async def all_records(self, user_id: int) -> List[GameHistoryEntry]:
        async with self.Session() as session:
            result = await session.execute(
                select(GameRecord)
                .where(GameRecord.user_id == user_id)
                .order_by(GameRecord.id)
            )
            return [_to_entry(row) for row in result.scalars().all()]

    async def create_chat_message(
        self,
        room: str,
        user_id: int,
        username: str,
        content: str
    ) -> ChatMessage:
        async with self.Session.begin() as session:
            row = ChatMessageRow(
                room=room,
                user_id=user_id,
                username=username,
                content=content,
                status=ModerationStatus.VISIBLE,
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return _to_message(row)

    async def get_chat_message(self, message_id: int) -> Optional[ChatMessage]:
        async with self.Session() as session:
            row = await session.get(ChatMessageRow, message_id)
            return _to_message(row) if row else None

    async def moderate_chat_message(
        self,
        message_id: int,
        status: ModerationStatus,
        moderator_id: int
    ) -> ChatMessage:
        async with self.Session.begin() as session:
            row = await session.get(ChatMessageRow, message_id, with_for_update=True)
            if row is None:
                raise MessageNotFound(f"Mensaje {message_id} no encontrado")
            row.status = status
            row.moderated_by = moderator_id
            await session.flush()
            return _to_message(row)

    async def recent_chat_messages(self, room: str, limit: int = 50) -> List[ChatMessage]:
        async with self.Session() as session:
            result = await session.execute(
                select(ChatMessageRow)
                .where(
                    ChatMessageRow.room == room,
                    ChatMessageRow.status != ModerationStatus.DELETED,
                )
                .order_by(ChatMessageRow.id.desc())
                .limit(limit)
            )
            return [_to_message(row) for row in reversed(result.scalars().all())]


def create_storage(database_url: str) -> Storage:
    """Memoria si no hay DATABASE_URL; SQL en caso contrario."""
    if not database_url:
        return MemoryStorage()
    return SqlStorage(database_url)
