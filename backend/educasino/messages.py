"""
=============================================================================
EDUCASINO - Mensajes del Canal en Tiempo Real
=============================================================================
Cada frame es {type, data}. Los mensajes del cliente se validan contra una
unión discriminada por `type`; un frame desconocido o malformado se
rechaza con un `error` a la conexión que lo envió.

Campos en camelCase en el cable, snake_case en Python.
=============================================================================
"""

from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# CLIENTE -> SERVIDOR
# =============================================================================

class JoinRoomData(WireModel):
    room: str = Field(min_length=1, max_length=32)


class ChatMessageData(WireModel):
    room: str = Field(min_length=1, max_length=32)
    content: str = Field(min_length=1, max_length=500)


class ModerateMessageData(WireModel):
    message_id: int
    action: Literal["delete", "flag"]


class PlaceBetData(WireModel):
    amount: Decimal = Field(gt=0)
    auto_cashout_at: Optional[float] = Field(None, gt=1.0, allow_inf_nan=False)


class CashoutData(WireModel):
    # Multiplicador que el cliente veía al pulsar; el servidor paga el menor
    multiplier: Optional[float] = Field(None, ge=1.0, allow_inf_nan=False)


class PlayGameData(WireModel):
    game: Literal["slot", "roulette", "dice"]
    amount: Decimal = Field(gt=0)
    params: Dict[str, Any] = Field(default_factory=dict)


class JoinRoom(WireModel):
    type: Literal["joinRoom"]
    data: JoinRoomData


class ChatMessageIn(WireModel):
    type: Literal["chatMessage"]
    data: ChatMessageData


class ModerateMessage(WireModel):
    type: Literal["moderateMessage"]
    data: ModerateMessageData


class PlaceBet(WireModel):
    type: Literal["placeBet"]
    data: PlaceBetData


class Cashout(WireModel):
    type: Literal["cashout"]
    data: CashoutData = Field(default_factory=CashoutData)


class PlayGame(WireModel):
    type: Literal["playGame"]
    data: PlayGameData


ClientMessage = Annotated[
    Union[JoinRoom, ChatMessageIn, ModerateMessage, PlaceBet, Cashout, PlayGame],
    Field(discriminator="type"),
]

client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: Any) -> ClientMessage:
    """Valida un frame entrante (dict o JSON). Lanza ValidationError."""
    if isinstance(raw, (str, bytes)):
        return client_message_adapter.validate_json(raw)
    return client_message_adapter.validate_python(raw)


# =============================================================================
# SERVIDOR -> CLIENTE
# =============================================================================

class ServerMessageType(str, Enum):
    GAME_STATE = "gameState"
    GAME_START = "gameStart"
    MULTIPLIER_UPDATE = "multiplierUpdate"
    GAME_CRASH = "gameCrash"
    WAITING_FOR_NEXT = "waitingForNext"
    ROOM_JOINED = "roomJoined"
    NEW_CHAT_MESSAGE = "newChatMessage"
    SYSTEM_MESSAGE = "systemMessage"
    MESSAGE_MODERATED = "messageModerated"
    ACTIVE_BETS_UPDATE = "activeBetsUpdate"
    BET_ACCEPTED = "betAccepted"
    CASHOUT_ACCEPTED = "cashoutAccepted"
    GAME_RESULT = "gameResult"
    ERROR = "error"


class ServerMessage(BaseModel):
    type: ServerMessageType
    data: Dict[str, Any] = Field(default_factory=dict)


def server_message(message_type: Union[ServerMessageType, str], data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Frame saliente serializable. Un `type` fuera del catálogo es ValueError."""
    message = ServerMessage(type=ServerMessageType(message_type), data=data or {})
    return message.model_dump(mode="json")


def error_message(code: str, message: str) -> Dict[str, Any]:
    return server_message(ServerMessageType.ERROR, {"code": code, "message": message})
