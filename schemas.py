from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Dict, List, Optional

from models import Tier, LobbyStatus


# ============ Requests ============

class JoinLobbyRequest(BaseModel):
    lucky_number: Optional[int] = None
    queue_size: Optional[int] = None
    lobby_id: Optional[str] = None


class ChooseNumberRequest(BaseModel):
    lucky_number: int


class ChatMessageRequest(BaseModel):
    message: str


class WalletAdjustRequest(BaseModel):
    tier: Tier
    amount: int
    reason: str = "MANUAL"
    metadata: Dict = Field(default_factory=dict)


# ============ Lobby views ============

class PlayerView(BaseModel):
    id: str
    user_id: str
    display_name: str
    seat_number: int
    lucky_number: Optional[int] = None
    lucky_number_revealed: bool
    is_you: bool
    joined_at: datetime


class RoundView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    seed: str
    spin_force_base: int
    spin_force_total: int
    spin_force_final: int
    spin_rotation_start: float
    spin_rotation_end: float
    spin_total_degrees: float
    wheel_segments: List[Dict]
    winning_segment: int
    winning_number: int
    winning_player_id: Optional[str] = None
    spin_started_at: datetime
    spin_completed_at: datetime
    resolved_at: Optional[datetime] = None


class LobbyView(BaseModel):
    id: str
    tier: Tier
    reward_tier: Optional[Tier] = None
    reward_amount: int
    queue_size: int
    status: LobbyStatus
    player_count: int
    lucky_number_min: int
    lucky_number_max: int
    available_numbers: List[int]
    ticket_tier_required: Tier
    countdown_seconds: int
    countdown_starts_at: Optional[datetime] = None
    countdown_ends_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    you_are_seated: bool
    players: List[PlayerView]
    round: Optional[RoundView] = None


class ChatMessageView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lobby_id: str
    user_id: str
    display_name: str
    message: str
    created_at: datetime
    is_you: bool = False


# ============ Wallet ============

class WalletResponse(BaseModel):
    user_id: str
    wallet: Dict[Tier, int]


class LedgerEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tier: Tier
    delta: int
    balance_after: int
    reason: str
    meta: Dict = Field(default_factory=dict, serialization_alias="metadata")
    created_at: datetime


class ReconcileResponse(BaseModel):
    user_id: str
    consistent: bool
    mismatches: Dict[Tier, List[int]]


# ============ Economy ============

class QueueConfigView(BaseModel):
    tier: Tier
    next_tier: Optional[Tier] = None
    queue_size: int
    reward_amount: int
    label: str


class EconomyResponse(BaseModel):
    tiers: List[Tier]
    queues: List[QueueConfigView]


# ============ History ============

class GameHistorySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    game_number: int
    lobby_id: Optional[str] = None
    tier: Tier
    reward_tier: Tier
    reward_amount: int
    status: LobbyStatus
    player_count: int
    queue_size: int
    spin_force_final: int
    winning_number: int
    winner_user_id: Optional[str] = None
    resolved_at: datetime


class GameHistoryPlayerView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    display_name: Optional[str] = None
    lucky_number: int
    seat_number: int
    ticket_tier_used: Tier
    joined_at: datetime
    is_winner: bool


class GameHistoryDetail(GameHistorySummary):
    round_id: Optional[str] = None
    seed: str
    spin_force_base: int
    spin_force_total: int
    spin_rotation_start: float
    spin_rotation_end: float
    spin_total_degrees: float
    wheel_segments: List[Dict]
    winning_segment: int
    countdown_started_at: Optional[datetime] = None
    spin_started_at: Optional[datetime] = None
    players: List[GameHistoryPlayerView]
