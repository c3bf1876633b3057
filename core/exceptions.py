"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一轉成結構化回應

每個異常都帶有：
- code：穩定的錯誤代碼（給前端判斷用）
- status_code：對應的 HTTP 狀態碼
- fatal：是否為不變量被破壞（需要營運人員介入）
"""


class LuckyLobbyException(Exception):
    """所有大廳 / 錢包異常的基類"""
    code = "LUCKY_LOBBY_ERROR"
    status_code = 400
    fatal = False

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


# ============ 驗證錯誤 ============

class InvalidTier(LuckyLobbyException):
    """不存在的票券等級"""
    code = "INVALID_TIER"

    def __init__(self, tier):
        self.tier = tier
        super().__init__(f"Invalid ticket tier: {tier}")


class InvalidQueueSize(LuckyLobbyException):
    """該等級沒有這個隊列大小（最高等級沒有任何隊列）"""
    code = "INVALID_QUEUE_SIZE"


class InvalidLuckyNumber(LuckyLobbyException):
    """幸運號碼超出大廳的範圍"""
    code = "INVALID_LUCKY_NUMBER"


class InvalidAmount(LuckyLobbyException):
    """數量必須是正整數"""
    code = "INVALID_AMOUNT"


class InvalidChatMessage(LuckyLobbyException):
    """聊天訊息是空的或太長"""
    code = "INVALID_CHAT_MESSAGE"


# ============ 找不到 ============

class NotFound(LuckyLobbyException):
    code = "NOT_FOUND"
    status_code = 404


class LobbyNotFound(NotFound):
    """大廳不存在"""
    code = "LOBBY_NOT_FOUND"

    def __init__(self, lobby_id):
        self.lobby_id = lobby_id
        super().__init__(f"Lobby {lobby_id} not found")


class PlayerNotSeated(NotFound):
    """玩家不在這個大廳裡"""
    code = "PLAYER_NOT_SEATED"

    def __init__(self, lobby_id, user_id):
        self.lobby_id = lobby_id
        self.user_id = user_id
        super().__init__(f"User {user_id} is not seated in lobby {lobby_id}")


class GameHistoryNotFound(NotFound):
    code = "GAME_HISTORY_NOT_FOUND"

    def __init__(self, game_number):
        self.game_number = game_number
        super().__init__(f"Game history {game_number} not found")


# ============ 容量 / 狀態錯誤 ============

class LobbyFull(LuckyLobbyException):
    """大廳已滿（或已經開始倒數），next_lobby_id 指向可加入的新大廳"""
    code = "LOBBY_FULL"
    status_code = 409

    def __init__(self, lobby_id, next_lobby_id=None):
        self.lobby_id = lobby_id
        self.next_lobby_id = next_lobby_id
        super().__init__(f"Lobby {lobby_id} is full")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["next_lobby_id"] = self.next_lobby_id
        return data


class LobbyAlreadyClosed(LuckyLobbyException):
    """倒數已開始，不能再更改號碼"""
    code = "LOBBY_ALREADY_CLOSED"
    status_code = 409


class DuplicateEntry(LuckyLobbyException):
    """玩家已經在這個大廳裡"""
    code = "DUPLICATE_ENTRY"
    status_code = 409


class NumberTaken(LuckyLobbyException):
    """號碼已被同大廳其他玩家選走"""
    code = "NUMBER_TAKEN"
    status_code = 409

    def __init__(self, lobby_id, number):
        self.lobby_id = lobby_id
        self.number = number
        super().__init__(f"Lucky number {number} is already taken in lobby {lobby_id}")


class InvalidStateTransition(LuckyLobbyException):
    """非法的狀態轉換"""
    code = "INVALID_STATE_TRANSITION"
    status_code = 409


# ============ 餘額錯誤 ============

class InsufficientBalance(LuckyLobbyException):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, user_id, tier, required, available):
        self.user_id = user_id
        self.tier = tier
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient {getattr(tier, 'value', tier)} tickets. "
            f"Required: {required}, Available: {available}"
        )


# ============ 不變量被破壞（致命） ============

class ResolutionInvariantViolation(LuckyLobbyException):
    """開獎時找不到對應號碼的玩家，不能隨便指定贏家"""
    code = "RESOLUTION_INVARIANT_VIOLATION"
    status_code = 500
    fatal = True


class LedgerInvariantViolation(LuckyLobbyException):
    """帳本重放結果與錢包餘額不一致"""
    code = "LEDGER_INVARIANT_VIOLATION"
    status_code = 500
    fatal = True


# ============ 結算 ============

class SettlementFailed(LuckyLobbyException):
    """結算寫入失敗（可重試）"""
    code = "SETTLEMENT_FAILED"
    status_code = 500

    def __init__(self, lobby_id, attempts, last_error=None):
        self.lobby_id = lobby_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Settlement for lobby {lobby_id} failed after {attempts} attempts: {last_error}"
        )
