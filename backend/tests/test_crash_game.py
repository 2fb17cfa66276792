import asyncio
import math
from decimal import Decimal

import pytest

from educasino.crash_game import (
    CrashConfig,
    CrashGame,
    CrashPhase,
    floor_multiplier,
    multiplier_at,
)
from educasino.errors import CrashGameError, InsufficientBalance, InvalidBet
from fakes import FixedCrashFairness

ALICE, BOB = 1, 2

# Con doubling 6.5 s: m = 2.0 a los 6.5 s y 4.0 a los 13 s
WAIT = 7.0
TO_2X = 6.5


def make_game(storage, clock, recorder, crash_points, user_recorder=None, **config):
    return CrashGame(
        storage,
        FixedCrashFairness(crash_points),
        config=CrashConfig(**config),
        clock=clock,
        publish=recorder,
        notify=user_recorder,
    )


async def open_and_run(game, clock):
    """Abre la ronda y la lleva a RUNNING en t=0."""
    if game.round is None:
        await game.open_round(clock())
    clock.advance(WAIT)
    await game.advance(clock())
    assert game.round.phase == CrashPhase.RUNNING


async def force_running(game, clock):
    """Con el actor activo: cualquier comando avanza el reloj antes de aplicarse."""
    clock.advance(WAIT)
    with pytest.raises(CrashGameError):
        await game.cashout(BOB)
    assert game.round.phase == CrashPhase.RUNNING


def test_multiplier_curve():
    assert multiplier_at(0) == 1.0
    assert multiplier_at(6.5) == 2.0
    assert multiplier_at(13.0) == 4.0
    assert multiplier_at(-1.0) == 1.0
    assert floor_multiplier(1.999) == 1.99


async def test_full_round_lifecycle(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [2.0, 5.0])
    await game.open_round(clock())
    first = game.round

    assert first.phase == CrashPhase.WAITING
    assert recorder.of_type("waitingForNext")[0]["data"]["commitment"] == first.commitment.commitment

    clock.advance(WAIT - 0.5)
    await game.advance(clock())
    assert first.phase == CrashPhase.WAITING

    clock.advance(0.5)
    await game.advance(clock())
    assert first.phase == CrashPhase.RUNNING
    assert len(recorder.of_type("gameStart")) == 1

    clock.advance(3.25)
    await game.advance(clock())
    assert first.phase == CrashPhase.RUNNING
    assert 1.0 < first.current_multiplier < 2.0

    clock.advance(TO_2X - 3.25)
    await game.advance(clock())
    assert first.phase == CrashPhase.CRASHED

    crash = recorder.of_type("gameCrash")[0]["data"]
    assert crash["crashPoint"] == 2.0
    assert crash["seed"] == first.commitment.seed
    assert game.get_history()[0]["crashPoint"] == 2.0

    clock.advance(2.5)
    await game.advance(clock())
    assert game.round is first

    clock.advance(0.5)
    await game.advance(clock())
    assert game.round.round_id == 2
    assert game.round.phase == CrashPhase.WAITING
    assert len(recorder.of_type("waitingForNext")) == 2


async def test_multiplier_updates_are_throttled(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [100.0])
    await open_and_run(game, clock)

    clock.advance(0.0625)
    await game.advance(clock())
    assert recorder.of_type("multiplierUpdate") == []

    clock.advance(0.0625)
    await game.advance(clock())
    assert len(recorder.of_type("multiplierUpdate")) == 1


async def test_instant_bust_crashes_at_start(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [1.0])
    await game.open_round(clock())
    await game.apply_place_bet(ALICE, "alice", Decimal("10"), auto_cashout_at=1.5)

    clock.advance(WAIT)
    await game.advance(clock())

    assert game.round.phase == CrashPhase.CRASHED
    assert await storage.get_balance(ALICE) == Decimal("990.00")


async def test_place_bet_debits_and_rejects_duplicates(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [2.0])
    await game.open_round(clock())

    receipt = await game.apply_place_bet(ALICE, "alice", Decimal("100"))
    assert receipt["roundId"] == 1
    assert Decimal(receipt["balance"]) == Decimal("900.00")
    assert recorder.of_type("activeBetsUpdate")[-1]["data"]["bets"][0]["userId"] == ALICE

    with pytest.raises(CrashGameError) as excinfo:
        await game.apply_place_bet(ALICE, "alice", Decimal("100"))
    assert excinfo.value.code == "DUPLICATE_BET"
    assert await storage.get_balance(ALICE) == Decimal("900.00")


async def test_bets_rejected_once_running(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [5.0])
    await open_and_run(game, clock)

    with pytest.raises(CrashGameError) as excinfo:
        await game.apply_place_bet(BOB, "bob", Decimal("10"))
    assert excinfo.value.code == "BETTING_CLOSED"
    assert await storage.get_balance(BOB) == Decimal("1000.00")


async def test_bet_validation(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [5.0])
    await game.open_round(clock())

    with pytest.raises(InsufficientBalance):
        await game.apply_place_bet(ALICE, "alice", Decimal("5000"))
    with pytest.raises(InvalidBet):
        await game.apply_place_bet(ALICE, "alice", Decimal("10"), auto_cashout_at=1.0)
    with pytest.raises(InvalidBet):
        await game.apply_place_bet(ALICE, "alice", Decimal("10"), auto_cashout_at=float("inf"))
    with pytest.raises(InvalidBet):
        await game.apply_place_bet(ALICE, "alice", Decimal("0.001"))

    assert game.round.wagers == {}
    assert await storage.get_balance(ALICE) == Decimal("1000.00")


async def test_cashout_pays_lesser_of_observed_and_server(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [10.0])
    await game.open_round(clock())
    await game.apply_place_bet(ALICE, "alice", Decimal("100"))
    await game.apply_place_bet(BOB, "bob", Decimal("100"))
    await open_and_run(game, clock)

    clock.advance(TO_2X)
    await game.advance(clock())
    assert game.round.current_multiplier == 2.0

    low = await game.apply_cashout(ALICE, observed=1.5)
    high = await game.apply_cashout(BOB, observed=5.0)

    assert low["cashoutMultiplier"] == 1.5
    assert Decimal(low["payout"]) == Decimal("150.00")
    assert high["cashoutMultiplier"] == 2.0
    assert Decimal(high["payout"]) == Decimal("200.00")
    assert await storage.get_balance(ALICE) == Decimal("1050.00")
    assert await storage.get_balance(BOB) == Decimal("1100.00")


async def test_cashout_rejections(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [10.0])
    await game.open_round(clock())
    await game.apply_place_bet(ALICE, "alice", Decimal("10"))

    with pytest.raises(CrashGameError) as excinfo:
        await game.apply_cashout(ALICE)
    assert excinfo.value.code == "NOT_RUNNING"

    await open_and_run(game, clock)

    with pytest.raises(CrashGameError) as excinfo:
        await game.apply_cashout(BOB)
    assert excinfo.value.code == "NO_ACTIVE_WAGER"

    await game.apply_cashout(ALICE)
    with pytest.raises(CrashGameError) as excinfo:
        await game.apply_cashout(ALICE)
    assert excinfo.value.code == "ALREADY_CASHED_OUT"


async def test_uncashed_wagers_lose_at_crash(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [2.0])
    await game.open_round(clock())
    await game.apply_place_bet(ALICE, "alice", Decimal("50"))
    await open_and_run(game, clock)

    clock.advance(TO_2X)
    await game.advance(clock())

    assert game.round.phase == CrashPhase.CRASHED
    assert await storage.get_balance(ALICE) == Decimal("950.00")
    history = await storage.get_history(ALICE)
    assert history[0].game == "crash"
    assert history[0].payout == Decimal("0")
    assert history[0].details["crashPoint"] == 2.0


async def test_auto_cashout_pays_threshold(storage, clock, recorder, user_recorder):
    game = make_game(storage, clock, recorder, [3.0], user_recorder=user_recorder)
    await game.open_round(clock())
    await game.apply_place_bet(ALICE, "alice", Decimal("100"), auto_cashout_at=2.0)
    await open_and_run(game, clock)

    # Un solo tick salta más allá del umbral y del quiebre
    clock.advance(13.0)
    await game.advance(clock())

    assert game.round.phase == CrashPhase.CRASHED
    wager = game.round.wagers[ALICE]
    assert wager.cashed_out
    assert wager.cashout_multiplier == 2.0
    assert await storage.get_balance(ALICE) == Decimal("1100.00")

    user_id, message = user_recorder.messages[0]
    assert user_id == ALICE
    assert message["type"] == "cashoutAccepted"
    assert message["data"]["auto"] is True


async def test_auto_cashout_at_crash_point_loses(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [2.0])
    await game.open_round(clock())
    await game.apply_place_bet(ALICE, "alice", Decimal("100"), auto_cashout_at=2.0)
    await open_and_run(game, clock)

    clock.advance(TO_2X)
    await game.advance(clock())

    assert not game.round.wagers[ALICE].cashed_out
    assert await storage.get_balance(ALICE) == Decimal("900.00")


async def test_snapshot_per_phase(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [2.0])
    await game.open_round(clock())
    clock.advance(2.0)

    waiting = game.snapshot()
    assert waiting["phase"] == "waiting"
    assert waiting["countdown"] == 5.0
    assert "crashPoint" not in waiting

    await open_and_run(game, clock)
    clock.advance(1.0)
    running = game.snapshot()
    assert running["phase"] == "running"
    assert running["elapsed"] == 1.0
    assert "crashPoint" not in running

    clock.advance(TO_2X)
    await game.advance(clock())
    crashed = game.snapshot()
    assert crashed["crashPoint"] == 2.0
    assert crashed["seed"] == game.round.commitment.seed


async def test_actor_serializes_concurrent_cashouts(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [10.0])
    await game.start()
    try:
        await game.place_bet(ALICE, "alice", Decimal("100"))
        await force_running(game, clock)

        clock.advance(TO_2X)
        results = await asyncio.gather(
            game.cashout(ALICE),
            game.cashout(ALICE),
            return_exceptions=True,
        )
    finally:
        await game.stop()

    receipts = [r for r in results if isinstance(r, dict)]
    errors = [r for r in results if isinstance(r, CrashGameError)]
    assert len(receipts) == 1
    assert len(errors) == 1
    assert errors[0].code == "ALREADY_CASHED_OUT"
    assert await storage.get_balance(ALICE) == Decimal("1100.00")


async def test_actor_advances_clock_before_command(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [2.0])
    await game.start()
    try:
        await game.place_bet(ALICE, "alice", Decimal("100"))
        await force_running(game, clock)

        # El quiebre ocurrió antes de que el comando llegue al actor
        clock.advance(TO_2X + 0.5)
        with pytest.raises(CrashGameError) as excinfo:
            await game.cashout(ALICE, observed=1.9)
    finally:
        await game.stop()

    assert excinfo.value.code == "NOT_RUNNING"
    assert await storage.get_balance(ALICE) == Decimal("900.00")


async def test_commands_rejected_when_stopped(storage, clock, recorder):
    game = make_game(storage, clock, recorder, [2.0])

    with pytest.raises(CrashGameError) as excinfo:
        await game.place_bet(ALICE, "alice", Decimal("10"))
    assert excinfo.value.code == "GAME_STOPPED"


@pytest.mark.parametrize("observed", [math.nan, math.inf, 0.5])
async def test_invalid_observed_multiplier_leaves_wager_open(storage, clock, recorder, observed):
    game = make_game(storage, clock, recorder, [10.0])
    await game.open_round(clock())
    await game.apply_place_bet(ALICE, "alice", Decimal("100"))
    await open_and_run(game, clock)

    with pytest.raises(InvalidBet):
        await game.apply_cashout(ALICE, observed=observed)

    wager = game.round.wagers[ALICE]
    assert not wager.cashed_out
    assert wager.payout == Decimal("0")
    assert await storage.get_history(ALICE) == []

    receipt = await game.apply_cashout(ALICE)
    assert receipt["cashedOut"] is True
    assert await storage.get_balance(ALICE) == Decimal("1000.00")


async def test_failed_credit_keeps_wager_open(storage, clock, recorder, monkeypatch):
    game = make_game(storage, clock, recorder, [10.0])
    await game.open_round(clock())
    await game.apply_place_bet(ALICE, "alice", Decimal("100"))
    await open_and_run(game, clock)

    async def broken_credit(user_id, amount):
        raise RuntimeError("base de datos caída")

    with monkeypatch.context() as patch:
        patch.setattr(storage, "credit", broken_credit)
        with pytest.raises(RuntimeError):
            await game.apply_cashout(ALICE)

    assert not game.round.wagers[ALICE].cashed_out
    await game.apply_cashout(ALICE)
    assert await storage.get_balance(ALICE) == Decimal("1000.00")


async def test_stop_fails_command_in_flight(storage, clock, recorder, monkeypatch):
    game = make_game(storage, clock, recorder, [2.0])
    entered = asyncio.Event()
    release = asyncio.Event()
    real_debit = storage.debit

    async def slow_debit(user_id, amount):
        entered.set()
        await release.wait()
        return await real_debit(user_id, amount)

    monkeypatch.setattr(storage, "debit", slow_debit)
    await game.start()
    bet = asyncio.create_task(game.place_bet(ALICE, "alice", Decimal("10")))
    await asyncio.wait_for(entered.wait(), timeout=1.0)

    await game.stop()

    with pytest.raises(CrashGameError) as excinfo:
        await asyncio.wait_for(bet, timeout=1.0)
    assert excinfo.value.code == "GAME_STOPPED"
    assert await storage.get_balance(ALICE) == Decimal("1000.00")


async def test_every_queued_command_is_answered(storage, clock, recorder):
    # Ticks muy cortos: la lectura de la cola compite con el temporizador
    game = make_game(storage, clock, recorder, [2.0], tick_interval=0.001)
    await game.start()
    try:
        results = await asyncio.wait_for(
            asyncio.gather(
                *(game.place_bet(ALICE, "alice", Decimal("1")) for _ in range(50)),
                return_exceptions=True,
            ),
            timeout=5.0,
        )
    finally:
        await game.stop()

    receipts = [r for r in results if isinstance(r, dict)]
    assert len(receipts) == 1
    assert all(r.code == "DUPLICATE_BET" for r in results if not isinstance(r, dict))
    assert await storage.get_balance(ALICE) == Decimal("999.00")
