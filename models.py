"""
ORM Models

資料表對應：
- users / ticket_balances / ledger_entries：錢包與帳本
- lobbies / lobby_players / lobby_rounds / lobby_chat_messages：大廳生命週期
- game_histories / game_history_players / game_sequences：開獎歷史快照
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """UTC 時間（naive），SQLite 不保存時區資訊，所以統一存 naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Tier(str, enum.Enum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    EMERALD = "EMERALD"
    SAPPHIRE = "SAPPHIRE"
    RUBY = "RUBY"
    AMETHYST = "AMETHYST"
    DIAMOND = "DIAMOND"


class LobbyStatus(str, enum.Enum):
    WAITING = "WAITING"
    COUNTDOWN = "COUNTDOWN"
    SPINNING = "SPINNING"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"


OPEN_STATUSES = (LobbyStatus.WAITING, LobbyStatus.COUNTDOWN, LobbyStatus.SPINNING)


class LedgerReason(str, enum.Enum):
    LOBBY_ENTRY = "LOBBY_ENTRY"
    LOBBY_WIN = "LOBBY_WIN"
    LOBBY_REFUND = "LOBBY_REFUND"
    MANUAL = "MANUAL"


# ============ 使用者與錢包 ============

class User(Base):
    """由身分提供者維護，這裡只讀 display_name"""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    display_name = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class TicketBalance(Base):
    """錢包的一格：某使用者在某等級的票數。只能透過 WalletLedger 修改"""
    __tablename__ = "ticket_balances"
    __table_args__ = (
        UniqueConstraint("user_id", "tier", name="uq_ticket_balance_user_tier"),
        CheckConstraint("balance >= 0", name="chk_ticket_balance_nonneg"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    tier = Column(Enum(Tier), nullable=False)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class LedgerEntry(Base):
    """Append-only：同一 user+tier 的 delta 總和必須等於目前餘額"""
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_user_tier", "user_id", "tier"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    tier = Column(Enum(Tier), nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String(40), nullable=False)
    # "metadata" 是 Declarative 保留字
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ============ 大廳 ============

class Lobby(Base):
    __tablename__ = "lobbies"
    __table_args__ = (
        CheckConstraint("player_count >= 0", name="chk_lobby_player_count_nonneg"),
        CheckConstraint("player_count <= queue_size", name="chk_lobby_player_count_capacity"),
        Index("ix_lobbies_tier_queue_status", "tier", "queue_size", "status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tier = Column(Enum(Tier), nullable=False)
    queue_size = Column(Integer, nullable=False)
    status = Column(Enum(LobbyStatus), nullable=False, default=LobbyStatus.WAITING)
    player_count = Column(Integer, nullable=False, default=0)
    spin_force_base = Column(Integer, nullable=False)
    countdown_seconds = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    countdown_starts_at = Column(DateTime, nullable=True)
    countdown_ends_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(200), nullable=True)

    players = relationship(
        "LobbyPlayer",
        back_populates="lobby",
        order_by="LobbyPlayer.seat_number",
        cascade="all, delete-orphan",
    )
    round = relationship(
        "LobbyRound",
        back_populates="lobby",
        uselist=False,
        cascade="all, delete-orphan",
    )


class LobbyPlayer(Base):
    __tablename__ = "lobby_players"
    __table_args__ = (
        UniqueConstraint("lobby_id", "user_id", name="uq_lobby_player_user"),
        UniqueConstraint("lobby_id", "lucky_number", name="uq_lobby_player_number"),
        UniqueConstraint("lobby_id", "seat_number", name="uq_lobby_player_seat"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    lobby_id = Column(String(36), ForeignKey("lobbies.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    display_name = Column(String(100), nullable=False)
    lucky_number = Column(Integer, nullable=True)
    seat_number = Column(Integer, nullable=False)
    ticket_tier_used = Column(Enum(Tier), nullable=False)
    ticket_entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)
    last_number_change = Column(DateTime, nullable=True)

    lobby = relationship("Lobby", back_populates="players")


class LobbyRound(Base):
    """大廳滿員開獎的輸入與輸出。resolved_at 寫入後不可再修改"""
    __tablename__ = "lobby_rounds"

    id = Column(String(36), primary_key=True, default=new_id)
    lobby_id = Column(
        String(36), ForeignKey("lobbies.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    seed = Column(String(128), nullable=False)
    spin_force_base = Column(Integer, nullable=False)
    spin_force_total = Column(Integer, nullable=False)
    spin_force_final = Column(BigInteger, nullable=False)
    spin_rotation_start = Column(Float, nullable=False)
    spin_rotation_end = Column(Float, nullable=False)
    spin_total_degrees = Column(Float, nullable=False)
    wheel_segments = Column(JSON, nullable=False)
    winning_segment = Column(Integer, nullable=False)
    winning_number = Column(Integer, nullable=False)
    winning_player_id = Column(String(36), ForeignKey("lobby_players.id"), nullable=True)

    countdown_started_at = Column(DateTime, nullable=True)
    spin_started_at = Column(DateTime, nullable=False)
    spin_completed_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    settlement_attempts = Column(Integer, nullable=False, default=0)
    last_settlement_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    lobby = relationship("Lobby", back_populates="round")
    winning_player = relationship("LobbyPlayer", foreign_keys=[winning_player_id])


class LobbyChatMessage(Base):
    __tablename__ = "lobby_chat_messages"
    __table_args__ = (
        Index("ix_lobby_chat_lobby_created", "lobby_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    lobby_id = Column(String(36), ForeignKey("lobbies.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    display_name = Column(String(100), nullable=False)
    message = Column(String(400), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ============ 開獎歷史 ============

class GameSequence(Base):
    """game_number 的發號器（單列，鎖住後遞增）"""
    __tablename__ = "game_sequences"

    name = Column(String(40), primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)


class GameHistory(Base):
    __tablename__ = "game_histories"

    id = Column(String(36), primary_key=True, default=new_id)
    game_number = Column(BigInteger, nullable=False, unique=True, index=True)
    lobby_id = Column(String(36), nullable=True)
    round_id = Column(String(36), nullable=True)
    tier = Column(Enum(Tier), nullable=False)
    reward_tier = Column(Enum(Tier), nullable=False)
    reward_amount = Column(Integer, nullable=False)
    status = Column(Enum(LobbyStatus), nullable=False)
    player_count = Column(Integer, nullable=False)
    queue_size = Column(Integer, nullable=False)
    seed = Column(String(128), nullable=False)
    spin_force_base = Column(Integer, nullable=False)
    spin_force_total = Column(Integer, nullable=False)
    spin_force_final = Column(BigInteger, nullable=False)
    spin_rotation_start = Column(Float, nullable=False)
    spin_rotation_end = Column(Float, nullable=False)
    spin_total_degrees = Column(Float, nullable=False)
    wheel_segments = Column(JSON, nullable=False)
    winning_segment = Column(Integer, nullable=False)
    winning_number = Column(Integer, nullable=False)
    winner_user_id = Column(String(64), nullable=True)
    countdown_started_at = Column(DateTime, nullable=True)
    spin_started_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    players = relationship(
        "GameHistoryPlayer",
        back_populates="history",
        order_by="GameHistoryPlayer.seat_number",
        cascade="all, delete-orphan",
    )


class GameHistoryPlayer(Base):
    __tablename__ = "game_history_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_history_id = Column(
        String(36), ForeignKey("game_histories.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(64), nullable=False)
    display_name = Column(String(100), nullable=True)
    lucky_number = Column(Integer, nullable=False)
    seat_number = Column(Integer, nullable=False)
    ticket_tier_used = Column(Enum(Tier), nullable=False)
    joined_at = Column(DateTime, nullable=False)
    is_winner = Column(Boolean, nullable=False, default=False)

    history = relationship("GameHistory", back_populates="players")
