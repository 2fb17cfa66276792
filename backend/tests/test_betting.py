import dataclasses
from decimal import Decimal

import pytest

from educasino.betting import DEFAULT_CATALOG, BettingService
from educasino.errors import EntropyUnavailableError, GameUnavailable, InsufficientBalance, InvalidBet
from educasino.outcome_engines import GameKind
from fakes import ScriptedRandom

ALICE = 1


class BrokenRandom(ScriptedRandom):
    def uniform_int(self, min_value, max_value):
        raise EntropyUnavailableError("sin entropía")


async def test_catalog_lists_all_games(storage):
    service = BettingService(storage)
    games = {game.key.value: game for game in service.list_games()}

    assert set(games) == {"slot", "roulette", "dice", "crash"}
    assert games["slot"].rtp == 96.5
    assert games["roulette"].rtp == 97.3
    assert games["dice"].rtp == 98.5
    assert games["dice"].to_dict()["houseEdge"] == 1.5


async def test_slot_bet_settles_and_records(storage):
    service = BettingService(storage, ScriptedRandom(floats=[0.0] * 9))
    result = await service.submit_bet(ALICE, "slot", Decimal("1.00"))

    assert result["multiplier"] == 130
    assert result["payout"] == "130.00"
    assert Decimal(result["balance"]) == Decimal("1129.00")

    history = await storage.get_history(ALICE)
    assert len(history) == 1
    assert history[0].id == result["recordId"]
    assert history[0].result == "win"


async def test_losing_bet_keeps_stake(storage):
    service = BettingService(storage, ScriptedRandom(ints=[0]))
    result = await service.submit_bet(ALICE, "roulette", "10", {"betType": "even"})

    assert result["win"] is False
    assert Decimal(result["balance"]) == Decimal("990.00")
    assert (await storage.get_history(ALICE))[0].result == "loss"


@pytest.mark.parametrize("game,params", [
    ("roulette", {"betType": "number", "betValue": 37}),
    ("roulette", {"betType": "color", "betValue": "blue"}),
    ("roulette", {"betType": "corner"}),
    ("dice", {"betType": "over", "target": 100}),
    ("dice", {"betType": "under", "target": 1}),
    ("dice", {"betType": "exact", "target": 0}),
    ("slot", {"lines": 5}),
])
async def test_invalid_params_never_touch_balance(storage, game, params):
    service = BettingService(storage, ScriptedRandom(ints=[1]))

    with pytest.raises(InvalidBet):
        await service.submit_bet(ALICE, game, Decimal("10"), params)
    assert await storage.get_balance(ALICE) == Decimal("1000.00")


async def test_stake_validation(storage):
    service = BettingService(storage)

    with pytest.raises(InvalidBet):
        await service.submit_bet(ALICE, "slot", Decimal("0.005"))
    with pytest.raises(InvalidBet):
        await service.submit_bet(ALICE, "slot", "abc")
    with pytest.raises(InsufficientBalance):
        await service.submit_bet(ALICE, "slot", Decimal("5000"))
    assert await storage.get_history(ALICE) == []


async def test_unknown_disabled_and_crash_games(storage):
    catalog = tuple(
        dataclasses.replace(game, enabled=False) if game.key == GameKind.DICE else game
        for game in DEFAULT_CATALOG
    )
    service = BettingService(storage, catalog=catalog)

    with pytest.raises(GameUnavailable):
        await service.submit_bet(ALICE, "poker", Decimal("1"))
    with pytest.raises(GameUnavailable):
        await service.submit_bet(ALICE, "dice", Decimal("1"), {"betType": "over", "target": 50})
    with pytest.raises(InvalidBet) as excinfo:
        await service.submit_bet(ALICE, "crash", Decimal("1"))
    assert excinfo.value.code == "USE_CRASH_ROUND"


async def test_entropy_failure_refunds_stake(storage):
    service = BettingService(storage, BrokenRandom())

    with pytest.raises(EntropyUnavailableError):
        await service.submit_bet(ALICE, "dice", Decimal("10"), {"betType": "under", "target": 50})

    assert await storage.get_balance(ALICE) == Decimal("1000.00")
    assert await storage.get_history(ALICE) == []
