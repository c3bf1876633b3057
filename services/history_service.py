"""
Game history service.

Archives an immutable snapshot of every resolved lobby round, keyed by a
strictly increasing game_number, so audits and the history screens never
depend on live lobby rows.
"""
import logging
from typing import List

from sqlalchemy.orm import Session

from models import (
    GameHistory,
    GameHistoryPlayer,
    GameSequence,
    Lobby,
    LobbyRound,
)
from core.exceptions import GameHistoryNotFound
from core.locks import with_sequence_lock
from services.economy import next_tier, reward_amount

logger = logging.getLogger(__name__)

GAME_SEQUENCE = "game_number"


def next_game_number(db: Session) -> int:
    """
    Reserve the next game_number inside the caller's transaction.

    The sequence row stays locked until the caller commits; a rollback hands
    the number back, so successful resolutions never leave a gap.
    """
    sequence = with_sequence_lock(GAME_SEQUENCE, db).first()
    if sequence is None:
        sequence = GameSequence(name=GAME_SEQUENCE, value=0)
        db.add(sequence)
        db.flush()
    sequence.value += 1
    db.flush()
    return sequence.value


def record_game_history(db: Session, lobby: Lobby, round_obj: LobbyRound) -> GameHistory:
    """
    Snapshot a resolved round and its seats. Flushes only; the settlement
    transaction commits it together with the winner's credit.
    """
    game_number = next_game_number(db)
    winner = round_obj.winning_player

    history = GameHistory(
        game_number=game_number,
        lobby_id=lobby.id,
        round_id=round_obj.id,
        tier=lobby.tier,
        reward_tier=next_tier(lobby.tier),
        reward_amount=reward_amount(lobby.queue_size),
        status=lobby.status,
        player_count=len(lobby.players),
        queue_size=lobby.queue_size,
        seed=round_obj.seed,
        spin_force_base=round_obj.spin_force_base,
        spin_force_total=round_obj.spin_force_total,
        spin_force_final=round_obj.spin_force_final,
        spin_rotation_start=round_obj.spin_rotation_start,
        spin_rotation_end=round_obj.spin_rotation_end,
        spin_total_degrees=round_obj.spin_total_degrees,
        wheel_segments=list(round_obj.wheel_segments),
        winning_segment=round_obj.winning_segment,
        winning_number=round_obj.winning_number,
        winner_user_id=winner.user_id if winner else None,
        countdown_started_at=round_obj.countdown_started_at,
        spin_started_at=round_obj.spin_started_at,
        resolved_at=round_obj.resolved_at,
    )

    for player in lobby.players:
        history.players.append(GameHistoryPlayer(
            user_id=player.user_id,
            display_name=player.display_name,
            lucky_number=player.lucky_number,
            seat_number=player.seat_number,
            ticket_tier_used=player.ticket_tier_used,
            joined_at=player.joined_at,
            is_winner=player.lucky_number == round_obj.winning_number,
        ))

    db.add(history)
    db.flush()

    logger.info(f"Archived lobby {lobby.id} as game #{game_number}")
    return history


def list_game_history(db: Session, limit: int) -> List[GameHistory]:
    """Newest first."""
    return (
        db.query(GameHistory)
        .order_by(GameHistory.game_number.desc())
        .limit(limit)
        .all()
    )


def get_game_history(db: Session, game_number: int) -> GameHistory:
    history = (
        db.query(GameHistory)
        .filter(GameHistory.game_number == game_number)
        .first()
    )
    if not history:
        raise GameHistoryNotFound(game_number)
    return history
