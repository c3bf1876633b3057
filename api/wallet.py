"""
Wallet API Endpoints

職責：
1. 查詢自己的錢包與帳本
2. 經濟目錄（不含任何 USD 估值）
3. 內部 credit / debit / 對帳（需要 X-Internal-Token）
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from database import get_db
from schemas import (
    EconomyResponse,
    LedgerEntryView,
    QueueConfigView,
    ReconcileResponse,
    WalletAdjustRequest,
    WalletResponse,
)
from core.wallet_ledger import WalletLedger
from core.exceptions import LuckyLobbyException
from services.economy import queue_configs, tiers_ordered
from api.deps import INTERNAL_ERROR, domain_error, get_current_user_id, require_internal_token

router = APIRouter(prefix="/api", tags=["wallet"])
logger = logging.getLogger(__name__)


@router.get("/wallet", response_model=WalletResponse)
def get_wallet(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        return WalletResponse(user_id=user_id, wallet=WalletLedger.get_wallet(db, user_id))

    except Exception as e:
        logger.error(f"Failed to fetch wallet: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.get("/wallet/ledger", response_model=List[LedgerEntryView])
def get_ledger(
    tier: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        return WalletLedger.list_entries(db, user_id, tier=tier, limit=limit)

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to fetch ledger: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.get("/economy/tiers", response_model=EconomyResponse)
def get_economy():
    return EconomyResponse(
        tiers=list(tiers_ordered()),
        queues=[QueueConfigView(**config) for config in queue_configs()]
    )


# ============ 內部路由 ============

@router.post(
    "/internal/wallets/{user_id}/credit",
    response_model=WalletResponse,
    dependencies=[Depends(require_internal_token)]
)
def credit_wallet(user_id: str, adjust: WalletAdjustRequest, db: Session = Depends(get_db)):
    try:
        wallet = WalletLedger.credit(
            db, user_id, adjust.tier, adjust.amount, adjust.reason, adjust.metadata
        )
        return WalletResponse(user_id=user_id, wallet=wallet)

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to credit wallet: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.post(
    "/internal/wallets/{user_id}/debit",
    response_model=WalletResponse,
    dependencies=[Depends(require_internal_token)]
)
def debit_wallet(user_id: str, adjust: WalletAdjustRequest, db: Session = Depends(get_db)):
    try:
        wallet = WalletLedger.debit(
            db, user_id, adjust.tier, adjust.amount, adjust.reason, adjust.metadata
        )
        return WalletResponse(user_id=user_id, wallet=wallet)

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to debit wallet: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.get(
    "/internal/wallets/{user_id}/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(require_internal_token)]
)
def reconcile_wallet(user_id: str, db: Session = Depends(get_db)):
    try:
        mismatches = WalletLedger.reconcile(db, user_id)
        if mismatches:
            logger.critical(f"Ledger mismatch for user {user_id}: {mismatches}")
        return ReconcileResponse(
            user_id=user_id,
            consistent=not mismatches,
            mismatches={tier: list(values) for tier, values in mismatches.items()}
        )

    except Exception as e:
        logger.error(f"Failed to reconcile wallet: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)
