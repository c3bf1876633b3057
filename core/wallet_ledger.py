"""
Wallet Ledger：票券餘額唯一可寫入的地方

職責：
1. credit / debit：原子地修改餘額，並寫入一筆帳本紀錄
2. get_wallet：讀取最新已提交的錢包（八個等級都會出現，缺的視為 0）
3. replay / reconcile / verify：用帳本重算餘額，確認「delta 總和 == 餘額」

並發設計：
- debit 的「檢查餘額 + 扣款」是同一個條件式 UPDATE（WHERE balance >= amount），
  同一 user+tier 的並發扣款由資料庫序列化，不會看到過期的餘額
- ticket_balances 另有 CHECK (balance >= 0)，就算有漏洞也寫不進負數

apply_credit / apply_debit 只 flush 不 commit，給大廳加入、結算、退款
這些需要「扣款 + 其他寫入」在同一個 transaction 的流程使用。
"""
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from database import transactional
from models import LedgerEntry, LedgerReason, Tier, TicketBalance, utcnow
from core.exceptions import InsufficientBalance, InvalidAmount, LedgerInvariantViolation
from services.economy import parse_tier, tiers_ordered

logger = logging.getLogger(__name__)


def _reason_value(reason) -> str:
    return reason.value if isinstance(reason, LedgerReason) else str(reason)


def _validate_amount(amount) -> int:
    # bool 是 int 的子類別，要特別排除
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")
    return amount


class WalletLedger:
    """票券錢包與帳本"""

    # ============ 寫入（不 commit） ============

    @staticmethod
    def _ensure_balance_row(db: Session, user_id: str, tier: Tier) -> None:
        exists = db.execute(
            select(TicketBalance.id).where(
                TicketBalance.user_id == user_id,
                TicketBalance.tier == tier
            )
        ).first()
        if exists:
            return

        # 兩個請求可能同時建立同一列：撞到 unique 就沿用對方那列
        values = dict(user_id=user_id, tier=tier, balance=0, updated_at=utcnow())
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(TicketBalance).values(**values).on_conflict_do_nothing(
                index_elements=["user_id", "tier"]
            )
        elif dialect == "sqlite":
            stmt = sqlite_insert(TicketBalance).values(**values).on_conflict_do_nothing(
                index_elements=["user_id", "tier"]
            )
        else:
            stmt = insert(TicketBalance).values(**values)
        db.execute(stmt)

    @staticmethod
    def _balance(db: Session, user_id: str, tier: Tier) -> int:
        value = db.execute(
            select(TicketBalance.balance).where(
                TicketBalance.user_id == user_id,
                TicketBalance.tier == tier
            )
        ).scalar()
        return value or 0

    @staticmethod
    def _append_entry(
        db: Session,
        user_id: str,
        tier: Tier,
        delta: int,
        reason,
        metadata: Optional[dict],
        operation: str
    ) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            tier=tier,
            delta=delta,
            balance_after=WalletLedger._balance(db, user_id, tier),
            reason=_reason_value(reason),
            meta={**(metadata or {}), "operation": operation},
            created_at=utcnow()
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def apply_credit(
        db: Session,
        user_id: str,
        tier,
        amount: int,
        reason=LedgerReason.MANUAL,
        metadata: Optional[dict] = None
    ) -> LedgerEntry:
        """
        加票（只 flush，由外層 transaction commit）

        返回：
            新增的 LedgerEntry

        異常：
            InvalidTier / InvalidAmount
        """
        tier = parse_tier(tier)
        amount = _validate_amount(amount)

        WalletLedger._ensure_balance_row(db, user_id, tier)
        db.execute(
            update(TicketBalance)
            .where(
                TicketBalance.user_id == user_id,
                TicketBalance.tier == tier
            )
            .values(balance=TicketBalance.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        entry = WalletLedger._append_entry(db, user_id, tier, amount, reason, metadata, "CREDIT")
        logger.info(
            f"Credited {amount} {tier.value} to {user_id} "
            f"(reason={entry.reason}, balance={entry.balance_after})"
        )
        return entry

    @staticmethod
    def apply_debit(
        db: Session,
        user_id: str,
        tier,
        amount: int,
        reason=LedgerReason.MANUAL,
        metadata: Optional[dict] = None
    ) -> LedgerEntry:
        """
        扣票（只 flush，由外層 transaction commit）

        異常：
            InvalidTier / InvalidAmount
            InsufficientBalance: 餘額不足，餘額維持不變
        """
        tier = parse_tier(tier)
        amount = _validate_amount(amount)

        result = db.execute(
            update(TicketBalance)
            .where(
                TicketBalance.user_id == user_id,
                TicketBalance.tier == tier,
                TicketBalance.balance >= amount
            )
            .values(balance=TicketBalance.balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientBalance(
                user_id, tier, amount, WalletLedger._balance(db, user_id, tier)
            )

        entry = WalletLedger._append_entry(db, user_id, tier, -amount, reason, metadata, "DEBIT")
        logger.info(
            f"Debited {amount} {tier.value} from {user_id} "
            f"(reason={entry.reason}, balance={entry.balance_after})"
        )
        return entry

    # ============ 寫入（自帶 transaction） ============

    @staticmethod
    @transactional
    def credit(
        db: Session,
        user_id: str,
        tier,
        amount: int,
        reason=LedgerReason.MANUAL,
        metadata: Optional[dict] = None
    ) -> Dict[Tier, int]:
        """加票並 commit，返回更新後的錢包"""
        WalletLedger.apply_credit(db, user_id, tier, amount, reason, metadata)
        return WalletLedger.get_wallet(db, user_id)

    @staticmethod
    @transactional
    def debit(
        db: Session,
        user_id: str,
        tier,
        amount: int,
        reason=LedgerReason.MANUAL,
        metadata: Optional[dict] = None
    ) -> Dict[Tier, int]:
        """扣票並 commit，返回更新後的錢包"""
        WalletLedger.apply_debit(db, user_id, tier, amount, reason, metadata)
        return WalletLedger.get_wallet(db, user_id)

    # ============ 讀取 ============

    @staticmethod
    def get_wallet(db: Session, user_id: str) -> Dict[Tier, int]:
        """
        取得錢包快照

        固定包含八個等級，沒有紀錄的等級為 0。
        直接查資料表欄位（不經過 identity map），所以一定是最新已提交的值。
        """
        wallet = {tier: 0 for tier in tiers_ordered()}
        rows = db.execute(
            select(TicketBalance.tier, TicketBalance.balance).where(
                TicketBalance.user_id == user_id
            )
        ).all()
        for tier, balance in rows:
            wallet[tier] = balance
        return wallet

    @staticmethod
    def list_entries(
        db: Session,
        user_id: str,
        tier=None,
        limit: int = 50
    ) -> List[LedgerEntry]:
        query = db.query(LedgerEntry).filter(LedgerEntry.user_id == user_id)
        if tier is not None:
            query = query.filter(LedgerEntry.tier == parse_tier(tier))
        return query.order_by(LedgerEntry.id.desc()).limit(limit).all()

    # ============ 對帳 ============

    @staticmethod
    def replay(db: Session, user_id: str) -> Dict[Tier, int]:
        """用帳本 delta 重算每個等級的餘額"""
        totals = {tier: 0 for tier in tiers_ordered()}
        rows = db.execute(
            select(LedgerEntry.tier, func.sum(LedgerEntry.delta))
            .where(LedgerEntry.user_id == user_id)
            .group_by(LedgerEntry.tier)
        ).all()
        for tier, total in rows:
            totals[tier] = int(total or 0)
        return totals

    @staticmethod
    def reconcile(db: Session, user_id: str) -> Dict[Tier, Tuple[int, int]]:
        """
        比對錢包與帳本

        返回：
            不一致的等級 -> (錢包餘額, 帳本總和)；全部一致時為空 dict
        """
        wallet = WalletLedger.get_wallet(db, user_id)
        replayed = WalletLedger.replay(db, user_id)
        return {
            tier: (wallet[tier], replayed[tier])
            for tier in tiers_ordered()
            if wallet[tier] != replayed[tier] or wallet[tier] < 0
        }

    @staticmethod
    def verify(db: Session, user_id: str) -> None:
        mismatches = WalletLedger.reconcile(db, user_id)
        if mismatches:
            detail = ", ".join(
                f"{tier.value}: wallet={balance} ledger={total}"
                for tier, (balance, total) in mismatches.items()
            )
            logger.critical(f"Ledger mismatch for user {user_id}: {detail}")
            raise LedgerInvariantViolation(f"Ledger mismatch for user {user_id}: {detail}")
