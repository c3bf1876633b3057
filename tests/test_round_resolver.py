from datetime import timedelta

import pytest

from models import (
    GameHistory,
    LedgerEntry,
    LedgerReason,
    Lobby,
    LobbyPlayer,
    LobbyRound,
    LobbyStatus,
    Tier,
)
from core.exceptions import (
    InvalidStateTransition,
    ResolutionInvariantViolation,
    SettlementFailed,
)
from core.lobby_manager import LobbyManager
from core.scheduler import lobby_scheduler
from core.round_resolver import RoundResolver
from core.state_machine import LobbyStateMachine
from core.wallet_ledger import WalletLedger
from services.history_service import get_game_history, list_game_history
from services.spin_service import compute_spin_force_total, fold_seed


def seed_for_winning_number(winning_number, seats, queue_size=20, base=18):
    total = compute_spin_force_total(base, seats)
    for i in range(10000):
        seed = f"fixed-seed-{i}"
        if fold_seed(seed, total) % queue_size == winning_number:
            return seed
    raise AssertionError(f"no seed lands on {winning_number}")


def countdown_end(db, lobby_id):
    return db.get(Lobby, lobby_id).countdown_ends_at


def test_bronze_lobby_pays_silver_to_holder_of_winning_number(db, fill_lobby):
    view = fill_lobby(20)
    assert view.status == LobbyStatus.COUNTDOWN
    ends_at = countdown_end(db, view.id)
    # fill_lobby 讓 user-i 坐第 i + 1 號座位、選號碼 i
    seats = [(i + 1, i) for i in range(20)]
    seed = seed_for_winning_number(7, seats)

    bronze_before = {f"user-{i}": WalletLedger.get_wallet(db, f"user-{i}")[Tier.BRONZE] for i in range(20)}

    # 倒數還沒結束
    assert not RoundResolver.start_spin(db, view.id, ends_at - timedelta(seconds=1), seed)
    assert db.get(Lobby, view.id).status == LobbyStatus.COUNTDOWN

    assert RoundResolver.start_spin(db, view.id, ends_at, seed)
    assert db.get(Lobby, view.id).status == LobbyStatus.SPINNING

    round_obj = db.query(LobbyRound).filter(LobbyRound.lobby_id == view.id).one()
    assert round_obj.seed == seed
    assert round_obj.winning_number == 7
    assert round_obj.winning_segment == 8
    assert round_obj.spin_force_total == compute_spin_force_total(18, seats)
    assert round_obj.winning_player.user_id == "user-7"

    assert RoundResolver.settle_round(db, view.id, ends_at)
    assert not RoundResolver.settle_round(db, view.id, ends_at)

    lobby = db.get(Lobby, view.id)
    assert lobby.status == LobbyStatus.RESOLVED
    assert lobby.resolved_at == ends_at

    for i in range(20):
        user_id = f"user-{i}"
        wallet = WalletLedger.get_wallet(db, user_id)
        assert wallet[Tier.BRONZE] == bronze_before[user_id]
        assert wallet[Tier.SILVER] == (1 if i == 7 else 0)
        assert WalletLedger.reconcile(db, user_id) == {}


def test_exactly_one_win_entry_per_resolution(db, fill_lobby):
    view = fill_lobby(20, numbers=False)
    status = RoundResolver.advance_lobby(db, view.id, countdown_end(db, view.id))
    assert status == LobbyStatus.RESOLVED

    wins = db.query(LedgerEntry).filter(LedgerEntry.reason == LedgerReason.LOBBY_WIN.value).all()
    assert len(wins) == 1
    round_obj = db.query(LobbyRound).filter(LobbyRound.lobby_id == view.id).one()
    assert wins[0].user_id == round_obj.winning_player.user_id
    assert wins[0].tier == Tier.SILVER
    assert wins[0].delta == 1
    assert wins[0].meta["lobby_id"] == view.id


def test_larger_queue_pays_more(db, fill_lobby):
    view = fill_lobby(40, tier=Tier.GOLD, queue_size=40)
    RoundResolver.advance_lobby(db, view.id, countdown_end(db, view.id))

    win = db.query(LedgerEntry).filter(LedgerEntry.reason == LedgerReason.LOBBY_WIN.value).one()
    assert win.tier == Tier.EMERALD
    assert win.delta == 2


def test_recorded_seed_replays_to_same_winner(db, fill_lobby):
    view = fill_lobby(20)
    RoundResolver.advance_lobby(db, view.id, countdown_end(db, view.id))

    round_obj = db.query(LobbyRound).filter(LobbyRound.lobby_id == view.id).one()
    seats = [
        (p.seat_number, p.lucky_number)
        for p in db.query(LobbyPlayer).filter(LobbyPlayer.lobby_id == view.id)
    ]
    replayed = RoundResolver.replay_outcome(round_obj, seats, 20)

    assert replayed.winning_number == round_obj.winning_number
    assert replayed.spin_force_final == round_obj.spin_force_final


def test_game_numbers_increase_and_history_is_queryable(db, fill_lobby):
    first = fill_lobby(20, prefix="first")
    RoundResolver.advance_lobby(db, first.id, countdown_end(db, first.id))
    second = fill_lobby(20, prefix="second")
    RoundResolver.advance_lobby(db, second.id, countdown_end(db, second.id))

    numbers = [h.game_number for h in list_game_history(db, 10)]
    assert numbers == [2, 1]

    detail = get_game_history(db, 1)
    assert detail.lobby_id == first.id
    assert detail.status == LobbyStatus.RESOLVED
    assert len(detail.players) == 20
    assert sum(1 for p in detail.players if p.is_winner) == 1
    winner = next(p for p in detail.players if p.is_winner)
    assert winner.lucky_number == detail.winning_number
    assert winner.user_id == detail.winner_user_id


def test_settlement_retries_after_transient_failure(db, fill_lobby, monkeypatch):
    view = fill_lobby(20)
    ends_at = countdown_end(db, view.id)
    assert RoundResolver.start_spin(db, view.id, ends_at)

    original = WalletLedger.apply_credit
    calls = {"count": 0}

    def flaky_credit(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("database hiccup")
        return original(*args, **kwargs)

    monkeypatch.setattr(WalletLedger, "apply_credit", staticmethod(flaky_credit))

    assert RoundResolver.resolve_with_retry(db, view.id, ends_at, max_attempts=3, backoff_seconds=0)

    round_obj = db.query(LobbyRound).filter(LobbyRound.lobby_id == view.id).one()
    assert db.get(Lobby, view.id).status == LobbyStatus.RESOLVED
    assert round_obj.settlement_attempts == 1
    assert round_obj.last_settlement_error is None
    assert db.query(GameHistory).count() == 1


def test_exhausted_settlement_stays_spinning_until_sweep(db, session_factory, fill_lobby, monkeypatch):
    view = fill_lobby(20)
    ends_at = countdown_end(db, view.id)

    def broken_credit(*args, **kwargs):
        raise RuntimeError("wallet store unavailable")

    with monkeypatch.context() as patch:
        patch.setattr(WalletLedger, "apply_credit", staticmethod(broken_credit))
        status = RoundResolver.advance_lobby(db, view.id, ends_at)

    assert status == LobbyStatus.SPINNING
    round_obj = db.query(LobbyRound).filter(LobbyRound.lobby_id == view.id).one()
    winning_number = round_obj.winning_number
    assert round_obj.settlement_attempts == 3
    assert "wallet store unavailable" in round_obj.last_settlement_error
    assert db.query(LedgerEntry).filter(LedgerEntry.reason == LedgerReason.LOBBY_WIN.value).count() == 0

    stats = RoundResolver.sweep(session_factory, ends_at + timedelta(seconds=1))
    assert stats["advanced"] == 1

    db.expire_all()
    round_obj = db.query(LobbyRound).filter(LobbyRound.lobby_id == view.id).one()
    assert db.get(Lobby, view.id).status == LobbyStatus.RESOLVED
    # 重試只重做結算，結果不變
    assert round_obj.winning_number == winning_number


def test_missing_number_halts_resolution(db, fill_lobby):
    view = fill_lobby(20)
    player = db.query(LobbyPlayer).filter(
        LobbyPlayer.lobby_id == view.id, LobbyPlayer.seat_number == 1
    ).one()
    player.lucky_number = None
    db.commit()

    with pytest.raises(ResolutionInvariantViolation):
        RoundResolver.advance_lobby(db, view.id, countdown_end(db, view.id))

    assert db.get(Lobby, view.id).status == LobbyStatus.COUNTDOWN
    assert db.query(LobbyRound).count() == 0
    assert db.query(LedgerEntry).filter(LedgerEntry.reason == LedgerReason.LOBBY_WIN.value).count() == 0


def test_sweep_only_advances_due_lobbies(session_factory, db, fill_lobby):
    view = fill_lobby(20)
    ends_at = countdown_end(db, view.id)

    assert RoundResolver.sweep(session_factory, ends_at - timedelta(seconds=1)) == {
        "advanced": 0, "failed": 0, "expired": 0
    }
    assert RoundResolver.sweep(session_factory, ends_at)["advanced"] == 1

    db.expire_all()
    assert db.get(Lobby, view.id).status == LobbyStatus.RESOLVED
    assert RoundResolver.sweep(session_factory, ends_at + timedelta(minutes=1))["advanced"] == 0


def test_zero_countdown_resolves_on_final_join(db, fill_lobby, lobby_settings, monkeypatch):
    monkeypatch.setattr(lobby_settings, "countdown_seconds", 0)
    view = fill_lobby(20)
    assert view.status == LobbyStatus.RESOLVED
    assert view.round is not None
    assert db.query(GameHistory).count() == 1


def test_state_machine_rejects_skips_and_reversals(db, fill_lobby):
    view = fill_lobby(20)
    lobby = db.get(Lobby, view.id)

    assert not LobbyStateMachine.can_transition(LobbyStatus.WAITING, LobbyStatus.SPINNING)
    assert not LobbyStateMachine.can_transition(LobbyStatus.RESOLVED, LobbyStatus.WAITING)
    assert LobbyStateMachine.is_terminal(LobbyStatus.RESOLVED)
    assert LobbyStateMachine.is_terminal(LobbyStatus.CANCELLED)
    with pytest.raises(InvalidStateTransition):
        LobbyStateMachine.transition(lobby, LobbyStatus.RESOLVED)
    assert lobby.status == LobbyStatus.COUNTDOWN


def test_number_assignment_changes_spin_with_same_seed(db, fund):
    lobby_ids = []
    for prefix, pick in (("forward", lambda i: i), ("backward", lambda i: 19 - i)):
        view = None
        for i in range(20):
            user_id = f"{prefix}-{i}"
            fund(user_id)
            view = LobbyManager.join_lobby(db, Tier.BRONZE, user_id, lucky_number=pick(i))
        lobby_ids.append(view.id)

    for lobby_id in lobby_ids:
        RoundResolver.advance_lobby(db, lobby_id, countdown_end(db, lobby_id), seed="same-seed")

    forward, backward = (
        db.query(LobbyRound).filter(LobbyRound.lobby_id == lobby_id).one()
        for lobby_id in lobby_ids
    )
    assert forward.spin_force_total != backward.spin_force_total
    assert forward.spin_force_final != backward.spin_force_final


def test_exhausted_settlement_raises_settlement_failed(db, fill_lobby, monkeypatch):
    view = fill_lobby(20)
    ends_at = countdown_end(db, view.id)
    assert RoundResolver.start_spin(db, view.id, ends_at)

    def broken_credit(*args, **kwargs):
        raise RuntimeError("wallet store unavailable")

    monkeypatch.setattr(WalletLedger, "apply_credit", staticmethod(broken_credit))

    with pytest.raises(SettlementFailed) as exc_info:
        RoundResolver.resolve_with_retry(db, view.id, ends_at, backoff_seconds=0)

    assert exc_info.value.lobby_id == view.id
    assert exc_info.value.attempts == 3
    assert "wallet store unavailable" in exc_info.value.last_error
    assert db.get(Lobby, view.id).status == LobbyStatus.SPINNING


def test_explicit_attempt_count_is_honoured(db, fill_lobby, monkeypatch):
    view = fill_lobby(20)
    ends_at = countdown_end(db, view.id)
    assert RoundResolver.start_spin(db, view.id, ends_at)

    with pytest.raises(ValueError):
        RoundResolver.resolve_with_retry(db, view.id, ends_at, max_attempts=0)

    def broken_credit(*args, **kwargs):
        raise RuntimeError("wallet store unavailable")

    monkeypatch.setattr(WalletLedger, "apply_credit", staticmethod(broken_credit))

    with pytest.raises(SettlementFailed):
        RoundResolver.resolve_with_retry(db, view.id, ends_at, max_attempts=1, backoff_seconds=0)

    round_obj = db.query(LobbyRound).filter(LobbyRound.lobby_id == view.id).one()
    assert round_obj.settlement_attempts == 1


def test_zero_countdown_is_handed_to_running_scheduler(db, fill_lobby, lobby_settings, monkeypatch):
    monkeypatch.setattr(lobby_settings, "countdown_seconds", 0)
    scheduled = []

    def fake_schedule(lobby_id, run_at):
        scheduled.append((lobby_id, run_at))
        return True

    monkeypatch.setattr(lobby_scheduler, "schedule_spin", fake_schedule)

    view = fill_lobby(20)

    assert view.status == LobbyStatus.COUNTDOWN
    assert view.round is None
    assert scheduled == [(view.id, countdown_end(db, view.id))]
