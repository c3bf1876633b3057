"""
大廳狀態機：集中管理所有狀態轉換

    WAITING -> COUNTDOWN -> SPINNING -> RESOLVED
        \\
         -> CANCELLED（只在未滿員過期、且策略為 refund 時）

規則：
- 不能跳過狀態
- 不能倒退
- RESOLVED / CANCELLED 是終點
"""
import logging

from models import Lobby, LobbyStatus
from core.exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)


class LobbyStateMachine:
    TRANSITIONS = {
        LobbyStatus.WAITING: {LobbyStatus.COUNTDOWN, LobbyStatus.CANCELLED},
        LobbyStatus.COUNTDOWN: {LobbyStatus.SPINNING},
        LobbyStatus.SPINNING: {LobbyStatus.RESOLVED},
        LobbyStatus.RESOLVED: set(),
        LobbyStatus.CANCELLED: set(),
    }

    @classmethod
    def can_transition(cls, current: LobbyStatus, target: LobbyStatus) -> bool:
        return target in cls.TRANSITIONS.get(current, set())

    @classmethod
    def transition(cls, lobby: Lobby, target: LobbyStatus) -> Lobby:
        """
        轉換大廳狀態

        參數：
            lobby: 已經被 with_lobby_lock 鎖定的 Lobby
            target: 目標狀態

        異常：
            InvalidStateTransition: 不合法的轉換
        """
        current = lobby.status
        if not cls.can_transition(current, target):
            raise InvalidStateTransition(
                f"Lobby {lobby.id} cannot transition from {current.value} to {target.value}"
            )

        lobby.status = target
        logger.info(f"Lobby {lobby.id} transitioned {current.value} -> {target.value}")
        return lobby

    @classmethod
    def is_terminal(cls, status: LobbyStatus) -> bool:
        return not cls.TRANSITIONS.get(status)
