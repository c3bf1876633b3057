"""
Lobby Manager：管理大廳的完整生命週期

職責：
1. 加入大廳（找到或建立開放中的大廳、扣入場票、入座）
2. 選擇 / 更換幸運號碼（只限 WAITING）
3. 滿員時轉入 COUNTDOWN，並安排轉盤開始的時間
4. 查詢大廳狀態（純讀取，絕不推進狀態）
5. 未滿員大廳的過期處理（可設定的策略）
6. 大廳聊天

並發設計：
- 入座是條件式 UPDATE（status = WAITING 且 player_count < queue_size），
  同一時間只有一個 commit 能拿到最後一個座位，也只有它會觸發滿員轉換
- 扣票與入座在同一個 transaction，任何一步失敗都整個 rollback
- (lobby_id, user_id)、(lobby_id, lucky_number) 都有 unique constraint
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import settings, transactional
from models import (
    LedgerReason,
    Lobby,
    LobbyChatMessage,
    LobbyPlayer,
    LobbyStatus,
    OPEN_STATUSES,
    User,
    utcnow,
)
from schemas import LobbyView
from core.exceptions import (
    DuplicateEntry,
    InvalidChatMessage,
    InvalidLuckyNumber,
    InvalidQueueSize,
    LobbyAlreadyClosed,
    LobbyFull,
    LobbyNotFound,
    NotFound,
    NumberTaken,
    PlayerNotSeated,
)
from core.locks import with_lobby_lock
from core.state_machine import LobbyStateMachine
from core.wallet_ledger import WalletLedger
from services.economy import (
    base_spin_force,
    entry_cost,
    lucky_number_range,
    validate_queue,
)
from services.lobby_view import serialize_lobby

logger = logging.getLogger(__name__)

CHAT_MAX_LENGTH = 400
CHAT_HISTORY_LIMIT = 30


class LobbyManager:
    """Lobby 生命週期管理器"""

    # ============ 內部工具 ============

    @staticmethod
    def _display_name(db: Session, user_id: str) -> str:
        user = db.get(User, user_id)
        if user and user.display_name:
            return user.display_name
        return "Anonymous"

    @staticmethod
    def _validate_number(queue_size: int, number) -> int:
        if isinstance(number, bool) or not isinstance(number, int):
            raise InvalidLuckyNumber(f"Lucky number must be an integer, got {number!r}")
        number_range = lucky_number_range(queue_size)
        if number not in number_range:
            raise InvalidLuckyNumber(
                f"Lucky number must be between {number_range.start} and {number_range.stop - 1}"
            )
        return number

    @staticmethod
    def _find_open_lobby(db: Session, tier, queue_size: int) -> Optional[Lobby]:
        """人最多的優先，同樣人數則最舊的優先"""
        return (
            db.query(Lobby)
            .filter(
                Lobby.tier == tier,
                Lobby.queue_size == queue_size,
                Lobby.status == LobbyStatus.WAITING,
                Lobby.player_count < Lobby.queue_size
            )
            .order_by(Lobby.player_count.desc(), Lobby.created_at.asc(), Lobby.id.asc())
            .first()
        )

    @staticmethod
    def _create_lobby(db: Session, tier, queue_size: int) -> Lobby:
        lobby = Lobby(
            tier=tier,
            queue_size=queue_size,
            status=LobbyStatus.WAITING,
            player_count=0,
            spin_force_base=base_spin_force(tier),
            countdown_seconds=settings.countdown_seconds,
            created_at=utcnow()
        )
        db.add(lobby)
        db.flush()  # 取得 lobby.id

        logger.info(f"Created lobby {lobby.id} (tier={tier.value}, queue_size={queue_size})")
        return lobby

    @staticmethod
    def _claim_seat(db: Session, lobby_id: str) -> Optional[int]:
        """
        原子地佔一個座位

        返回：
            佔到的座位號（1-based，也就是 commit 順序），大廳已滿或已關閉則為 None
        """
        result = db.execute(
            update(Lobby)
            .where(
                Lobby.id == lobby_id,
                Lobby.status == LobbyStatus.WAITING,
                Lobby.player_count < Lobby.queue_size
            )
            .values(player_count=Lobby.player_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return db.execute(
            select(Lobby.player_count).where(Lobby.id == lobby_id)
        ).scalar_one()

    @staticmethod
    def _seated_in_open_lobby(db: Session, tier, queue_size: int, user_id: str) -> Optional[LobbyPlayer]:
        return (
            db.query(LobbyPlayer)
            .join(Lobby, LobbyPlayer.lobby_id == Lobby.id)
            .filter(
                LobbyPlayer.user_id == user_id,
                Lobby.tier == tier,
                Lobby.queue_size == queue_size,
                Lobby.status == LobbyStatus.WAITING
            )
            .first()
        )

    @staticmethod
    def _number_holder(db: Session, lobby_id: str, number: int) -> Optional[LobbyPlayer]:
        return (
            db.query(LobbyPlayer)
            .filter(LobbyPlayer.lobby_id == lobby_id, LobbyPlayer.lucky_number == number)
            .first()
        )

    @staticmethod
    def _begin_countdown(db: Session, lobby: Lobby, now: datetime) -> None:
        """
        WAITING -> COUNTDOWN

        還沒選號碼的座位，依入座順序分配最小的空號碼。
        號碼範圍剛好等於容量，所以滿員後每個號碼都對應到唯一一個座位。
        """
        LobbyStateMachine.transition(lobby, LobbyStatus.COUNTDOWN)
        lobby.countdown_starts_at = now
        lobby.countdown_ends_at = now + timedelta(seconds=lobby.countdown_seconds)

        players = (
            db.query(LobbyPlayer)
            .filter(LobbyPlayer.lobby_id == lobby.id)
            .order_by(LobbyPlayer.seat_number)
            .all()
        )
        taken = {p.lucky_number for p in players if p.lucky_number is not None}
        free_numbers = (n for n in lucky_number_range(lobby.queue_size) if n not in taken)
        for player in players:
            if player.lucky_number is None:
                player.lucky_number = next(free_numbers)
                player.last_number_change = now
                logger.info(
                    f"Auto-assigned lucky number {player.lucky_number} "
                    f"to {player.user_id} in lobby {lobby.id}"
                )

        db.flush()
        logger.info(
            f"Lobby {lobby.id} is full ({lobby.queue_size} players), "
            f"countdown ends at {lobby.countdown_ends_at.isoformat()}"
        )

    # ============ 加入大廳 ============

    @staticmethod
    @transactional
    def open_lobby(db: Session, tier, queue_size: int) -> str:
        """找到開放中的大廳，沒有就建立一個，返回 lobby_id"""
        tier, queue_size = validate_queue(tier, queue_size)
        lobby = LobbyManager._find_open_lobby(db, tier, queue_size)
        if lobby is None:
            lobby = LobbyManager._create_lobby(db, tier, queue_size)
        return lobby.id

    @staticmethod
    @transactional
    def _admit_player(
        db: Session,
        tier,
        queue_size: int,
        user_id: str,
        lucky_number: Optional[int],
        lobby_id: Optional[str],
        now: datetime
    ) -> Tuple[str, bool]:
        """
        入座（扣票 + 新增 LobbyPlayer，同一個 transaction）

        返回：
            (lobby_id, 這次加入是否讓大廳滿員)
        """
        # 1. 決定大廳
        if lobby_id:
            lobby = with_lobby_lock(lobby_id, db).populate_existing().first()
            if not lobby:
                raise LobbyNotFound(lobby_id)
            if lobby.tier != tier or lobby.queue_size != queue_size:
                raise InvalidQueueSize(
                    f"Lobby {lobby_id} is a {lobby.tier.value}/{lobby.queue_size} lobby"
                )
        else:
            lobby = LobbyManager._find_open_lobby(db, tier, queue_size)
            if lobby is None:
                lobby = LobbyManager._create_lobby(db, tier, queue_size)
            else:
                lobby = with_lobby_lock(lobby.id, db).populate_existing().first()

        # 2. 不能重複入座
        existing = (
            db.query(LobbyPlayer)
            .filter(LobbyPlayer.lobby_id == lobby.id, LobbyPlayer.user_id == user_id)
            .first()
        )
        if existing or LobbyManager._seated_in_open_lobby(db, tier, queue_size, user_id):
            raise DuplicateEntry(
                f"User {user_id} is already seated in an open {tier.value}/{queue_size} lobby"
            )

        if lobby.status != LobbyStatus.WAITING or lobby.player_count >= lobby.queue_size:
            raise LobbyFull(lobby.id)

        # 3. 號碼檢查
        if lucky_number is not None:
            LobbyManager._validate_number(queue_size, lucky_number)
            if LobbyManager._number_holder(db, lobby.id, lucky_number):
                raise NumberTaken(lobby.id, lucky_number)

        # 4. 扣入場票（餘額不足會拋 InsufficientBalance，整個 rollback）
        cost_tier, cost = entry_cost(tier)
        entry = WalletLedger.apply_debit(
            db, user_id, cost_tier, cost, LedgerReason.LOBBY_ENTRY,
            {"lobby_id": lobby.id, "tier": tier.value, "queue_size": queue_size}
        )

        # 5. 佔座位（條件式 UPDATE，輸掉競爭的人拿到 LobbyFull）
        seat_number = LobbyManager._claim_seat(db, lobby.id)
        if seat_number is None:
            raise LobbyFull(lobby.id)

        # 6. 入座
        player = LobbyPlayer(
            lobby_id=lobby.id,
            user_id=user_id,
            display_name=LobbyManager._display_name(db, user_id),
            lucky_number=lucky_number,
            seat_number=seat_number,
            ticket_tier_used=cost_tier,
            ticket_entry_id=entry.id,
            joined_at=now,
            last_number_change=now if lucky_number is not None else None
        )
        db.add(player)
        try:
            db.flush()
        except IntegrityError:
            # 並發的請求搶先寫入了同一個 user 或號碼
            db.rollback()
            if db.query(LobbyPlayer).filter(
                LobbyPlayer.lobby_id == lobby.id, LobbyPlayer.user_id == user_id
            ).first():
                raise DuplicateEntry(f"User {user_id} is already seated in lobby {lobby.id}")
            raise NumberTaken(lobby.id, lucky_number)

        logger.info(
            f"User {user_id} joined lobby {lobby.id} at seat {seat_number}/{queue_size} "
            f"(lucky_number={lucky_number})"
        )

        # 7. 最後一個座位：轉入倒數
        filled = seat_number == queue_size
        if filled:
            lobby = with_lobby_lock(lobby.id, db).populate_existing().first()
            LobbyManager._begin_countdown(db, lobby, now)

        return lobby.id, filled

    @staticmethod
    def _after_fill(db: Session, lobby_id: str) -> None:
        """
        滿員之後交給排程器在 countdown_ends_at 開轉（倒數為 0 時立刻執行）

        排程器沒啟動時：倒數為 0 就在這裡直接開轉（不做退避等待），否則等下一次 sweep
        """
        from core.round_resolver import RoundResolver  # 避免 circular import
        from core.scheduler import lobby_scheduler

        lobby = db.get(Lobby, lobby_id)
        if lobby_scheduler.schedule_spin(lobby_id, lobby.countdown_ends_at):
            return
        if lobby.countdown_seconds > 0:
            return

        try:
            RoundResolver.advance_lobby(db, lobby_id, backoff_seconds=0)
        except Exception as e:
            # 開獎由系統觸發，失敗不影響這次加入的結果，sweep 會重試
            logger.error(f"Immediate spin failed for lobby {lobby_id}: {e}", exc_info=True)

    @staticmethod
    def join_lobby(
        db: Session,
        tier,
        user_id: str,
        lucky_number: Optional[int] = None,
        queue_size: Optional[int] = None,
        lobby_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> LobbyView:
        """
        加入大廳

        流程：
        1. 驗證等級、隊列大小、號碼
        2. 找到（或建立）開放中的大廳
        3. 扣 1 張入場票並入座
        4. 如果這次加入讓大廳滿員：WAITING -> COUNTDOWN，並安排開轉

        參數：
            tier: 票券等級
            user_id: 身分提供者給的使用者 ID
            lucky_number: 幸運號碼（可選，滿員時會自動分配）
            queue_size: 20 / 40 / 60，預設為 settings.default_queue_size
            lobby_id: 指定要加入的大廳（可選）

        異常：
            InvalidTier / InvalidQueueSize / InvalidLuckyNumber
            DuplicateEntry: 已經在開放中的同類大廳
            NumberTaken: 號碼被選走了
            InsufficientBalance: 沒有入場票
            LobbyFull: 大廳已滿，next_lobby_id 是可以改去的大廳
        """
        tier, queue_size = validate_queue(
            tier, queue_size if queue_size is not None else settings.default_queue_size
        )
        if lucky_number is not None:
            LobbyManager._validate_number(queue_size, lucky_number)
        now = now or utcnow()

        try:
            joined_lobby_id, filled = LobbyManager._admit_player(
                db, tier, queue_size, user_id, lucky_number, lobby_id, now
            )
        except LobbyFull as e:
            e.next_lobby_id = LobbyManager.open_lobby(db, tier, queue_size)
            logger.info(f"Lobby {e.lobby_id} full for {user_id}, directing to {e.next_lobby_id}")
            raise

        if filled:
            LobbyManager._after_fill(db, joined_lobby_id)

        return LobbyManager.get_lobby_state(db, joined_lobby_id, user_id)

    # ============ 幸運號碼 ============

    @staticmethod
    @transactional
    def _set_lucky_number(db: Session, lobby_id: str, user_id: str, number: int, now: datetime) -> None:
        lobby = with_lobby_lock(lobby_id, db).populate_existing().first()
        if not lobby:
            raise LobbyNotFound(lobby_id)
        if lobby.status != LobbyStatus.WAITING:
            raise LobbyAlreadyClosed(
                f"Lucky number can only be changed while lobby is waiting (status: {lobby.status.value})"
            )

        player = (
            db.query(LobbyPlayer)
            .filter(LobbyPlayer.lobby_id == lobby_id, LobbyPlayer.user_id == user_id)
            .first()
        )
        if not player:
            raise PlayerNotSeated(lobby_id, user_id)

        LobbyManager._validate_number(lobby.queue_size, number)
        if player.lucky_number == number:
            return

        holder = LobbyManager._number_holder(db, lobby_id, number)
        if holder and holder.id != player.id:
            raise NumberTaken(lobby_id, number)

        player.lucky_number = number
        player.last_number_change = now
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            raise NumberTaken(lobby_id, number)

        logger.info(f"User {user_id} chose lucky number {number} in lobby {lobby_id}")

    @staticmethod
    def choose_lucky_number(
        db: Session,
        lobby_id: str,
        user_id: str,
        number: int,
        now: Optional[datetime] = None
    ) -> LobbyView:
        """
        選擇 / 更換幸運號碼

        異常：
            LobbyNotFound / PlayerNotSeated
            LobbyAlreadyClosed: 倒數已開始
            InvalidLuckyNumber / NumberTaken
        """
        LobbyManager._set_lucky_number(db, lobby_id, user_id, number, now or utcnow())
        return LobbyManager.get_lobby_state(db, lobby_id, user_id)

    # ============ 查詢（純讀取） ============

    @staticmethod
    def get_lobby_state(db: Session, lobby_id: str, user_id: Optional[str]) -> LobbyView:
        lobby = db.query(Lobby).filter(Lobby.id == lobby_id).first()
        if not lobby:
            raise LobbyNotFound(lobby_id)
        return serialize_lobby(lobby, user_id)

    @staticmethod
    def get_active_lobby_state(
        db: Session,
        tier,
        user_id: str,
        queue_size: Optional[int] = None
    ) -> LobbyView:
        """
        玩家目前在這個等級的大廳；沒有的話，回傳可以加入的開放大廳

        不會建立大廳（讀取不能有副作用）

        異常：
            NotFound: 玩家不在任何進行中的大廳，也沒有開放中的大廳
        """
        tier, size = validate_queue(
            tier, queue_size if queue_size is not None else settings.default_queue_size
        )

        query = (
            db.query(Lobby)
            .join(LobbyPlayer, LobbyPlayer.lobby_id == Lobby.id)
            .filter(
                LobbyPlayer.user_id == user_id,
                Lobby.tier == tier,
                Lobby.status.in_(OPEN_STATUSES)
            )
        )
        if queue_size is not None:
            query = query.filter(Lobby.queue_size == size)
        lobby = query.order_by(LobbyPlayer.joined_at.desc()).first()

        if lobby is None:
            lobby = LobbyManager._find_open_lobby(db, tier, size)
        if lobby is None:
            raise NotFound(f"No active {tier.value} lobby")

        return serialize_lobby(lobby, user_id)

    # ============ 過期策略 ============

    @staticmethod
    @transactional
    def _expire_lobby(db: Session, lobby_id: str, now: datetime) -> bool:
        lobby = with_lobby_lock(lobby_id, db).populate_existing().first()
        if not lobby or lobby.status != LobbyStatus.WAITING:
            return False

        for player in lobby.players:
            refund_tier, refund = entry_cost(player.ticket_tier_used)
            WalletLedger.apply_credit(
                db, player.user_id, refund_tier, refund, LedgerReason.LOBBY_REFUND,
                {"lobby_id": lobby.id, "ticket_entry_id": player.ticket_entry_id}
            )

        LobbyStateMachine.transition(lobby, LobbyStatus.CANCELLED)
        lobby.cancelled_at = now
        lobby.cancellation_reason = "expired"

        logger.info(f"Lobby {lobby.id} expired, refunded {len(lobby.players)} players")
        return True

    @staticmethod
    def expire_stale_lobbies(db: Session, now: Optional[datetime] = None) -> int:
        """
        未滿員的大廳等太久時的處理

        settings.lobby_expiry_policy：
        - "none"：什麼都不做（預設）
        - "refund"：超過 lobby_wait_timeout_seconds 的 WAITING 大廳取消，退回入場票

        返回：
            被取消的大廳數量
        """
        if settings.lobby_expiry_policy != "refund":
            return 0

        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.lobby_wait_timeout_seconds)
        stale_ids = [
            lobby_id for (lobby_id,) in db.query(Lobby.id).filter(
                Lobby.status == LobbyStatus.WAITING,
                Lobby.player_count > 0,
                Lobby.created_at <= cutoff
            ).all()
        ]

        expired = 0
        for lobby_id in stale_ids:
            if LobbyManager._expire_lobby(db, lobby_id, now):
                expired += 1
        return expired

    # ============ 聊天 ============

    @staticmethod
    @transactional
    def post_chat_message(db: Session, lobby_id: str, user_id: str, message: str) -> LobbyChatMessage:
        trimmed = (message or "").strip()
        if not trimmed:
            raise InvalidChatMessage("Message cannot be empty")
        if len(trimmed) > CHAT_MAX_LENGTH:
            raise InvalidChatMessage("Message is too long")

        if not db.query(Lobby.id).filter(Lobby.id == lobby_id).first():
            raise LobbyNotFound(lobby_id)

        player = (
            db.query(LobbyPlayer)
            .filter(LobbyPlayer.lobby_id == lobby_id, LobbyPlayer.user_id == user_id)
            .first()
        )
        if not player:
            raise PlayerNotSeated(lobby_id, user_id)

        chat_message = LobbyChatMessage(
            lobby_id=lobby_id,
            user_id=user_id,
            display_name=player.display_name,
            message=trimmed,
            created_at=utcnow()
        )
        db.add(chat_message)
        db.flush()
        return chat_message

    @staticmethod
    def list_chat_messages(db: Session, lobby_id: str, limit: int = CHAT_HISTORY_LIMIT) -> List[LobbyChatMessage]:
        """最新的 limit 則，舊的在前"""
        messages = (
            db.query(LobbyChatMessage)
            .filter(LobbyChatMessage.lobby_id == lobby_id)
            .order_by(LobbyChatMessage.created_at.desc(), LobbyChatMessage.id.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(messages))
