"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

主要使用 PostgreSQL 的 SELECT ... FOR UPDATE 來實現悲觀鎖（Pessimistic Locking）。
SQLite 會忽略 FOR UPDATE（整個資料庫單一寫入者），所以容量與餘額這類
不變量另外用條件式 UPDATE 保證，見 WalletLedger / LobbyManager。
"""
from sqlalchemy.orm import Session, Query

from models import Lobby, LobbyRound, GameSequence


def with_lobby_lock(lobby_id: str, db: Session) -> Query:
    """
    鎖定一個 Lobby（行級鎖）

    使用場景：
    - 狀態轉換（WAITING -> COUNTDOWN -> SPINNING -> RESOLVED）
    - 更改幸運號碼時，確保倒數沒有同時開始
    - 結算時，防止兩個 worker 重複發獎

    範例：
        lobby = with_lobby_lock(lobby_id, db).first()
        if not lobby:
            raise LobbyNotFound(lobby_id)

    注意：
        - nowait=False 表示如果鎖被佔用，會等待
        - 必須在 transaction 內使用（確保有 commit 或 rollback）
    """
    return db.query(Lobby).filter(
        Lobby.id == lobby_id
    ).with_for_update(nowait=False)


def with_round_lock(lobby_id: str, db: Session) -> Query:
    """鎖定大廳的開獎紀錄（一個大廳最多一筆）"""
    return db.query(LobbyRound).filter(
        LobbyRound.lobby_id == lobby_id
    ).with_for_update(nowait=False)


def with_sequence_lock(name: str, db: Session) -> Query:
    """
    鎖定 game_number 發號器

    發號與寫入歷史在同一個 transaction，rollback 時號碼也一起退回，
    所以成功的開獎之間不會出現空號
    """
    return db.query(GameSequence).filter(
        GameSequence.name == name
    ).with_for_update(nowait=False)
