"""
Lobby API Endpoints

職責：
1. 加入大廳 / 選號碼
2. 查詢大廳狀態（純讀取，不推進狀態）
3. 大廳聊天

開獎由伺服器排程器負責，客戶端回報轉盤結果的舊路由一律回 410。
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from database import get_db
from schemas import (
    ChatMessageRequest,
    ChatMessageView,
    ChooseNumberRequest,
    JoinLobbyRequest,
    LobbyView,
)
from core.lobby_manager import LobbyManager
from core.exceptions import LuckyLobbyException
from api.deps import INTERNAL_ERROR, domain_error, get_current_user_id

router = APIRouter(prefix="/api/lobbies", tags=["lobbies"])
logger = logging.getLogger(__name__)


@router.get("/active", response_model=LobbyView)
def get_active_lobby(
    tier: str = Query("BRONZE"),
    queue_size: Optional[int] = Query(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    取得玩家在這個等級的大廳（沒有的話，回傳開放中的大廳）
    """
    try:
        return LobbyManager.get_active_lobby_state(db, tier, user_id, queue_size)

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to get active lobby: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.get("/{lobby_id}/state", response_model=LobbyView)
def get_lobby_state(
    lobby_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        return LobbyManager.get_lobby_state(db, lobby_id, user_id)

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to get lobby state: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.post("/{tier}/join", response_model=LobbyView)
def join_lobby(
    tier: str,
    join_data: JoinLobbyRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    加入大廳（扣 1 張該等級的入場票）

    失敗時的 code：
    - INSUFFICIENT_BALANCE：沒有入場票
    - DUPLICATE_ENTRY：已經在開放中的大廳
    - NUMBER_TAKEN：號碼被選走
    - LOBBY_FULL：大廳已滿，detail.next_lobby_id 是可以改去的大廳
    """
    try:
        lobby = LobbyManager.join_lobby(
            db,
            tier,
            user_id,
            lucky_number=join_data.lucky_number,
            queue_size=join_data.queue_size,
            lobby_id=join_data.lobby_id
        )
        return lobby

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to join lobby: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.post("/{lobby_id}/choose-number", response_model=LobbyView)
def choose_number(
    lobby_id: str,
    number_data: ChooseNumberRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        return LobbyManager.choose_lucky_number(db, lobby_id, user_id, number_data.lucky_number)

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to choose lucky number: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.post("/{lobby_id}/resolve", status_code=410)
def resolve_lobby(lobby_id: str):
    raise HTTPException(
        status_code=410,
        detail={
            "code": "GONE",
            "message": "Client-side spin reporting is not accepted. The server resolves spins automatically."
        }
    )


@router.get("/{lobby_id}/chat", response_model=List[ChatMessageView])
def get_chat_messages(
    lobby_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        messages = LobbyManager.list_chat_messages(db, lobby_id)
        return [
            ChatMessageView.model_validate(message).model_copy(
                update={"is_you": message.user_id == user_id}
            )
            for message in messages
        ]

    except Exception as e:
        logger.error(f"Failed to load lobby chat: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.post("/{lobby_id}/chat", response_model=ChatMessageView)
def post_chat_message(
    lobby_id: str,
    chat_data: ChatMessageRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    try:
        message = LobbyManager.post_chat_message(db, lobby_id, user_id, chat_data.message)
        return ChatMessageView.model_validate(message).model_copy(update={"is_you": True})

    except LuckyLobbyException as e:
        raise domain_error(e)
    except Exception as e:
        logger.error(f"Failed to post lobby chat: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)
