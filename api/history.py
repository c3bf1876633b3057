"""
Game History API Endpoints
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from database import get_db, settings
from schemas import GameHistoryDetail, GameHistorySummary
from services.history_service import get_game_history, list_game_history
from core.exceptions import LuckyLobbyException
from api.deps import INTERNAL_ERROR, domain_error, get_current_user_id

router = APIRouter(
    prefix="/api/history",
    tags=["history"],
    dependencies=[Depends(get_current_user_id)]
)
logger = logging.getLogger(__name__)


@router.get("", response_model=List[GameHistorySummary])
def list_history(limit: Optional[int] = Query(None, ge=1), db: Session = Depends(get_db)):
    """最新的在前，limit 上限為 settings.history_max_limit"""
    try:
        limit = min(limit or settings.history_default_limit, settings.history_max_limit)
        return list_game_history(db, limit)

    except Exception as e:
        logger.error(f"Failed to load game history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.get("/{game_number}", response_model=GameHistoryDetail)
def get_history_detail(game_number: int, db: Session = Depends(get_db)):
    try:
        return get_game_history(db, game_number)

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to load game history detail: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)
