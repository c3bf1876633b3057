"""
Round Resolver：大廳滿員後的開獎與結算

職責：
1. start_spin：COUNTDOWN -> SPINNING，產生 seed、計算結果、寫入 LobbyRound
2. settle_round：發獎給贏家、SPINNING -> RESOLVED、寫入開獎歷史
3. resolve_with_retry：結算失敗就重試，次數用完就升級成營運警報
4. sweep：排程器定期呼叫，推進所有到期的大廳

設計原則：
- 開獎永遠由系統觸發，玩家無法主動開獎
- 結果（seed、winning_number）寫入後就不再改變；結算失敗只重試結算
- 找不到對應號碼的玩家是不變量被破壞，直接停下來，絕不隨便指定贏家
- 輸家不需要任何錢包操作：入場時扣掉的票就是燒掉的票
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from database import settings, transactional
from models import (
    LedgerReason,
    Lobby,
    LobbyPlayer,
    LobbyRound,
    LobbyStatus,
    utcnow,
)
from core.exceptions import (
    LobbyNotFound,
    LuckyLobbyException,
    ResolutionInvariantViolation,
    SettlementFailed,
)
from core.locks import with_lobby_lock, with_round_lock
from core.state_machine import LobbyStateMachine
from core.wallet_ledger import WalletLedger
from services.economy import next_tier, priced_value_usd, reward_amount
from services.history_service import record_game_history
from services.spin_service import SpinOutcome, compute_outcome, generate_seed

logger = logging.getLogger(__name__)


class RoundResolver:
    """開獎引擎"""

    @staticmethod
    def _find_winner(lobby: Lobby, players: List[LobbyPlayer], winning_number: int) -> LobbyPlayer:
        matches = [p for p in players if p.lucky_number == winning_number]
        if len(matches) != 1:
            message = (
                f"Lobby {lobby.id}: winning number {winning_number} matches "
                f"{len(matches)} seats, expected exactly one"
            )
            logger.critical(message)
            raise ResolutionInvariantViolation(message)
        return matches[0]

    @staticmethod
    def replay_outcome(round_obj: LobbyRound, seats: List[Tuple[int, int]], queue_size: int) -> SpinOutcome:
        """用紀錄下來的 seed 與 (seat_number, lucky_number) 重算結果，給稽核用"""
        return compute_outcome(
            round_obj.seed, round_obj.spin_force_base, seats, queue_size
        )

    @staticmethod
    @transactional
    def start_spin(
        db: Session,
        lobby_id: str,
        now: Optional[datetime] = None,
        seed: Optional[str] = None
    ) -> bool:
        """
        COUNTDOWN -> SPINNING

        前置條件：
        1. 大廳狀態是 COUNTDOWN
        2. 現在時間 >= countdown_ends_at

        返回：
            True 如果這次呼叫完成了轉換（冪等：已經轉過就返回 False）

        異常：
            LobbyNotFound
            ResolutionInvariantViolation: 座位數不對、有座位沒號碼、號碼對不到唯一玩家
        """
        now = now or utcnow()

        # 1. 取得並鎖定 Lobby
        lobby = with_lobby_lock(lobby_id, db).populate_existing().first()
        if not lobby:
            raise LobbyNotFound(lobby_id)
        if lobby.status != LobbyStatus.COUNTDOWN:
            return False
        if lobby.countdown_ends_at and now < lobby.countdown_ends_at:
            return False

        # 2. 檢查座位
        players = list(lobby.players)
        if len(players) != lobby.queue_size or any(p.lucky_number is None for p in players):
            message = (
                f"Lobby {lobby.id} reached COUNTDOWN with {len(players)}/{lobby.queue_size} "
                f"seats or unassigned lucky numbers"
            )
            logger.critical(message)
            raise ResolutionInvariantViolation(message)
        if lobby.round is not None:
            message = f"Lobby {lobby.id} already has a round while in COUNTDOWN"
            logger.critical(message)
            raise ResolutionInvariantViolation(message)

        # 3. 計算結果
        outcome = compute_outcome(
            seed or generate_seed(),
            lobby.spin_force_base,
            [(p.seat_number, p.lucky_number) for p in players],
            lobby.queue_size
        )
        winner = RoundResolver._find_winner(lobby, players, outcome.winning_number)

        # 4. 狀態轉換 + 寫入 LobbyRound
        LobbyStateMachine.transition(lobby, LobbyStatus.SPINNING)
        round_obj = LobbyRound(
            lobby_id=lobby.id,
            seed=outcome.seed,
            spin_force_base=outcome.spin_force_base,
            spin_force_total=outcome.spin_force_total,
            spin_force_final=outcome.spin_force_final,
            spin_rotation_start=outcome.spin_rotation_start,
            spin_rotation_end=outcome.spin_rotation_end,
            spin_total_degrees=outcome.spin_total_degrees,
            wheel_segments=outcome.wheel_segments,
            winning_segment=outcome.winning_segment,
            winning_number=outcome.winning_number,
            winning_player_id=winner.id,
            countdown_started_at=lobby.countdown_starts_at,
            spin_started_at=now,
            spin_completed_at=now + timedelta(milliseconds=settings.spin_duration_ms),
            settlement_attempts=0,
            created_at=now
        )
        db.add(round_obj)
        db.flush()

        logger.info(
            f"Lobby {lobby.id} spinning: force_total={outcome.spin_force_total} "
            f"force_final={outcome.spin_force_final} winning_number={outcome.winning_number} "
            f"winner={winner.user_id}"
        )
        return True

    @staticmethod
    @transactional
    def settle_round(db: Session, lobby_id: str, now: Optional[datetime] = None) -> bool:
        """
        結算：發獎 + SPINNING -> RESOLVED + 寫入歷史（同一個 transaction）

        返回：
            True 如果這次呼叫完成結算（冪等：已經結算過就返回 False）
        """
        now = now or utcnow()

        lobby = with_lobby_lock(lobby_id, db).populate_existing().first()
        if not lobby:
            raise LobbyNotFound(lobby_id)
        if lobby.status != LobbyStatus.SPINNING:
            return False

        round_obj = lobby.round
        if round_obj is None or round_obj.winning_player is None:
            message = f"Lobby {lobby.id} is SPINNING without a computed round"
            logger.critical(message)
            raise ResolutionInvariantViolation(message)

        # 1. 發獎：下一級的票，數量依隊列大小
        winner = round_obj.winning_player
        reward_tier = next_tier(lobby.tier)
        amount = reward_amount(lobby.queue_size)
        WalletLedger.apply_credit(
            db, winner.user_id, reward_tier, amount, LedgerReason.LOBBY_WIN,
            {"lobby_id": lobby.id, "round_id": round_obj.id, "winning_number": round_obj.winning_number}
        )

        # 2. 狀態轉換
        round_obj.resolved_at = now
        round_obj.last_settlement_error = None
        LobbyStateMachine.transition(lobby, LobbyStatus.RESOLVED)
        lobby.resolved_at = now

        # 3. 開獎歷史
        history = record_game_history(db, lobby, round_obj)

        logger.info(
            f"Lobby {lobby.id} resolved as game #{history.game_number}: "
            f"{winner.user_id} won {amount} {reward_tier.value} "
            f"(internal value ${priced_value_usd(reward_tier, amount):.3f})"
        )
        return True

    @staticmethod
    @transactional
    def _record_settlement_failure(db: Session, lobby_id: str, error: str) -> int:
        round_obj = with_round_lock(lobby_id, db).populate_existing().first()
        if round_obj is None:
            return 0
        round_obj.settlement_attempts = (round_obj.settlement_attempts or 0) + 1
        round_obj.last_settlement_error = error[:2000]
        return round_obj.settlement_attempts

    @staticmethod
    def resolve_with_retry(
        db: Session,
        lobby_id: str,
        now: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None
    ) -> bool:
        """
        結算並重試

        - 不變量被破壞：不重試，直接往上拋
        - 其他錯誤：記錄失敗次數，線性退避後重試
        - 次數用完：CRITICAL 警報後拋 SettlementFailed，大廳留在 SPINNING，下一次 sweep 會再試

        參數：
            max_attempts: 這次呼叫最多嘗試幾次，預設 settings.settlement_max_attempts（至少 1）
            backoff_seconds: 退避基數，0 表示不等待

        返回：
            True（大廳已經是 RESOLVED，這次或之前結算的）

        異常：
            SettlementFailed: 次數用完仍然失敗
        """
        if max_attempts is None:
            max_attempts = settings.settlement_max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if backoff_seconds is None:
            backoff_seconds = settings.settlement_retry_backoff_seconds

        error = None
        for attempt in range(1, max_attempts + 1):
            try:
                RoundResolver.settle_round(db, lobby_id, now)
                return True
            except LuckyLobbyException as e:
                if e.fatal or isinstance(e, LobbyNotFound):
                    raise
                error = f"{e.code}: {e}"
            except Exception as e:
                error = f"{type(e).__name__}: {e}"

            total = RoundResolver._record_settlement_failure(db, lobby_id, error)
            logger.warning(
                f"Settlement attempt {attempt}/{max_attempts} failed for lobby {lobby_id} "
                f"(total failures: {total}): {error}"
            )
            if attempt < max_attempts and backoff_seconds > 0:
                time.sleep(backoff_seconds * attempt)

        logger.critical(
            f"Settlement for lobby {lobby_id} still failing after {max_attempts} attempts, "
            f"operator attention required"
        )
        raise SettlementFailed(lobby_id, max_attempts, error)

    @staticmethod
    def advance_lobby(
        db: Session,
        lobby_id: str,
        now: Optional[datetime] = None,
        seed: Optional[str] = None,
        backoff_seconds: Optional[float] = None
    ) -> LobbyStatus:
        """
        把到期的大廳往前推：COUNTDOWN -> SPINNING -> RESOLVED

        由排程器（或沒有排程器時，倒數為 0 的滿員加入）呼叫，讀取 API 不會呼叫這裡

        返回：
            推進後的大廳狀態（結算次數用完時為 SPINNING）
        """
        now = now or utcnow()
        RoundResolver.start_spin(db, lobby_id, now, seed)

        status = db.query(Lobby.status).filter(Lobby.id == lobby_id).scalar()
        if status == LobbyStatus.SPINNING:
            try:
                RoundResolver.resolve_with_retry(db, lobby_id, now, backoff_seconds=backoff_seconds)
                status = LobbyStatus.RESOLVED
            except SettlementFailed as e:
                logger.warning(f"Lobby {lobby_id} left SPINNING for the next sweep: {e}")
        return status

    @staticmethod
    def due_lobby_ids(db: Session, now: datetime) -> List[str]:
        """倒數已到期的 COUNTDOWN 大廳，以及還沒結算完的 SPINNING 大廳"""
        countdown = db.query(Lobby.id).filter(
            Lobby.status == LobbyStatus.COUNTDOWN,
            Lobby.countdown_ends_at <= now
        ).order_by(Lobby.countdown_ends_at).all()
        spinning = db.query(Lobby.id).filter(
            Lobby.status == LobbyStatus.SPINNING
        ).all()
        return [lobby_id for (lobby_id,) in countdown + spinning]

    @staticmethod
    def sweep(session_factory: Callable[[], Session], now: Optional[datetime] = None) -> Dict[str, int]:
        """
        排程器的定期工作

        每個大廳獨立處理，一個大廳失敗不影響其他大廳

        返回：
            {"advanced": 推進到 RESOLVED 的數量, "failed": 失敗數量, "expired": 過期取消數量}
        """
        from core.lobby_manager import LobbyManager  # 避免 circular import

        now = now or utcnow()
        stats = {"advanced": 0, "failed": 0, "expired": 0}

        db = session_factory()
        try:
            for lobby_id in RoundResolver.due_lobby_ids(db, now):
                try:
                    status = RoundResolver.advance_lobby(db, lobby_id, now)
                    if status == LobbyStatus.RESOLVED:
                        stats["advanced"] += 1
                    else:
                        stats["failed"] += 1
                except ResolutionInvariantViolation as e:
                    stats["failed"] += 1
                    logger.critical(f"Lobby {lobby_id} halted: {e}")
                except Exception as e:
                    stats["failed"] += 1
                    logger.error(f"Failed to advance lobby {lobby_id}: {e}", exc_info=True)

            stats["expired"] = LobbyManager.expire_stale_lobbies(db, now)
        finally:
            db.close()

        if any(stats.values()):
            logger.info(f"Lobby sweep: {stats}")
        return stats
