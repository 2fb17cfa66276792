import asyncio
from decimal import Decimal

import pytest

from educasino.errors import InsufficientBalance, InvalidBet, MessageNotFound, UserNotFound
from educasino.models import ModerationStatus
from educasino.storage import DEFAULT_BALANCE, MemoryStorage, SqlStorage, create_storage


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        storage = MemoryStorage()
    else:
        storage = SqlStorage(f"sqlite+aiosqlite:///{tmp_path / 'casino.db'}")
    await storage.init()
    yield storage
    await storage.close()


async def test_new_users_start_with_default_balance(store):
    user = await store.create_user("carol")

    assert user.balance == DEFAULT_BALANCE
    assert not user.is_admin
    assert (await store.get_user_by_username("carol")).id == user.id
    assert await store.get_user(9999) is None


async def test_duplicate_username(store):
    await store.create_user("carol")
    with pytest.raises(InvalidBet) as excinfo:
        await store.create_user("carol")
    assert excinfo.value.code == "USERNAME_TAKEN"

    again = await store.get_or_create_user("carol")
    assert again.username == "carol"


async def test_debit_and_credit(store):
    user = await store.create_user("carol", Decimal("100.00"))

    assert await store.debit(user.id, Decimal("30.50")) == Decimal("69.50")
    assert await store.credit(user.id, Decimal("0.50")) == Decimal("70.00")
    assert await store.get_balance(user.id) == Decimal("70.00")


async def test_overdraft_is_rejected(store):
    user = await store.create_user("carol", Decimal("10.00"))

    with pytest.raises(InsufficientBalance):
        await store.debit(user.id, Decimal("10.01"))
    assert await store.get_balance(user.id) == Decimal("10.00")

    assert await store.debit(user.id, Decimal("10.00")) == Decimal("0.00")


async def test_unknown_user(store):
    with pytest.raises(UserNotFound):
        await store.debit(4242, Decimal("1"))
    with pytest.raises(UserNotFound):
        await store.credit(4242, Decimal("1"))
    with pytest.raises(UserNotFound):
        await store.get_balance(4242)


async def test_amounts_must_be_positive(store):
    user = await store.create_user("carol")
    with pytest.raises(InvalidBet):
        await store.debit(user.id, Decimal("0"))
    with pytest.raises(InvalidBet):
        await store.credit(user.id, Decimal("-1"))


async def test_concurrent_debits_never_overdraw():
    storage = MemoryStorage()
    user = await storage.create_user("carol", Decimal("100.00"))

    results = await asyncio.gather(
        *(storage.debit(user.id, Decimal("40")) for _ in range(3)),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, InsufficientBalance)) == 1
    assert await storage.get_balance(user.id) == Decimal("20.00")


async def test_history_is_newest_first_with_paging(store):
    user = await store.create_user("carol")
    for n in range(5):
        game = "dice" if n % 2 else "slot"
        await store.record_game(user.id, game, Decimal("1.00"), 0.0, Decimal("0.00"), {"n": n})

    page = await store.get_history(user.id, limit=2, offset=1)
    assert [entry.details["n"] for entry in page] == [3, 2]

    dice = await store.get_history(user.id, game="dice")
    assert [entry.details["n"] for entry in dice] == [3, 1]


async def test_statistics(store):
    user = await store.create_user("carol")
    await store.record_game(user.id, "slot", Decimal("10.00"), 2.0, Decimal("20.00"))
    await store.record_game(user.id, "dice", Decimal("10.00"), 0.0, Decimal("0.00"))
    await store.record_game(user.id, "dice", Decimal("20.00"), 1.5, Decimal("30.00"))

    stats = await store.get_statistics(user.id)

    assert Decimal(stats["totalWagered"]) == Decimal("40")
    assert Decimal(stats["totalWon"]) == Decimal("50")
    assert Decimal(stats["profitLoss"]) == Decimal("10")
    assert stats["rtp"] == 125.0
    assert stats["gamesPlayed"] == 3
    assert Decimal(stats["avgBet"]) == Decimal("13.33")

    by_game = {entry["type"]: entry for entry in stats["gameStats"]}
    assert by_game["dice"]["count"] == 2
    assert Decimal(by_game["dice"]["profit"]) == Decimal("0")
    assert by_game["slot"]["rtp"] == 200.0


async def test_statistics_without_games(store):
    user = await store.create_user("carol")
    stats = await store.get_statistics(user.id)

    assert stats["gamesPlayed"] == 0
    assert stats["rtp"] == 0.0
    assert stats["gameStats"] == []


async def test_chat_moderation(store):
    user = await store.create_user("carol")
    first = await store.create_chat_message("general", user.id, "carol", "hola")
    second = await store.create_chat_message("general", user.id, "carol", "spam")
    await store.create_chat_message("crash", user.id, "carol", "otra sala")

    flagged = await store.moderate_chat_message(first.id, ModerationStatus.FLAGGED, user.id)
    assert flagged.status == ModerationStatus.FLAGGED
    assert flagged.moderated_by == user.id

    await store.moderate_chat_message(second.id, ModerationStatus.DELETED, user.id)
    visible = await store.recent_chat_messages("general")
    assert [m.content for m in visible] == ["hola"]

    with pytest.raises(MessageNotFound):
        await store.moderate_chat_message(9999, ModerationStatus.DELETED, user.id)


def test_create_storage_picks_backend(tmp_path):
    assert isinstance(create_storage(""), MemoryStorage)
    assert isinstance(create_storage(f"sqlite+aiosqlite:///{tmp_path / 'x.db'}"), SqlStorage)
