"""
Lobby projection.

Builds the LobbyView that the API returns. Read-only: it never touches
lobby state, so it is safe to call from any GET endpoint.
"""
from typing import Optional

from models import Lobby, LobbyStatus
from schemas import LobbyView, PlayerView, RoundView
from services.economy import lucky_number_range, next_tier, reward_amount


def serialize_lobby(lobby: Lobby, viewer_id: Optional[str]) -> LobbyView:
    """
    Other players' lucky numbers stay hidden while the lobby is WAITING,
    only the viewer's own number is shown. available_numbers never reveals
    who holds which number.
    """
    number_range = lucky_number_range(lobby.queue_size)
    taken = {p.lucky_number for p in lobby.players if p.lucky_number is not None}

    players = []
    for player in lobby.players:
        is_you = player.user_id == viewer_id
        hidden = lobby.status == LobbyStatus.WAITING and not is_you
        players.append(PlayerView(
            id=player.id,
            user_id=player.user_id,
            display_name=player.display_name,
            seat_number=player.seat_number,
            lucky_number=None if hidden else player.lucky_number,
            lucky_number_revealed=not hidden,
            is_you=is_you,
            joined_at=player.joined_at,
        ))

    return LobbyView(
        id=lobby.id,
        tier=lobby.tier,
        reward_tier=next_tier(lobby.tier),
        reward_amount=reward_amount(lobby.queue_size),
        queue_size=lobby.queue_size,
        status=lobby.status,
        player_count=lobby.player_count,
        lucky_number_min=number_range.start,
        lucky_number_max=number_range.stop - 1,
        available_numbers=[n for n in number_range if n not in taken],
        ticket_tier_required=lobby.tier,
        countdown_seconds=lobby.countdown_seconds,
        countdown_starts_at=lobby.countdown_starts_at,
        countdown_ends_at=lobby.countdown_ends_at,
        resolved_at=lobby.resolved_at,
        created_at=lobby.created_at,
        you_are_seated=any(p.is_you for p in players),
        players=players,
        round=RoundView.model_validate(lobby.round) if lobby.round else None,
    )
