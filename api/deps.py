"""
API 共用的 dependency 與錯誤轉換

身分驗證由外部的身分提供者負責，這裡只讀它轉送過來的 X-User-Id。
"""
from typing import Optional

from fastapi import Header, HTTPException

from database import settings
from core.exceptions import LuckyLobbyException

INTERNAL_ERROR = {"code": "INTERNAL_ERROR", "message": "Internal error"}


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTHENTICATION_REQUIRED", "message": "Authentication required"}
        )
    return x_user_id.strip()


def require_internal_token(x_internal_token: Optional[str] = Header(None)) -> None:
    """內部路由：沒設定 internal_api_token 時整組關閉"""
    if not settings.internal_api_token or x_internal_token != settings.internal_api_token:
        raise HTTPException(
            status_code=403,
            detail={"code": "FORBIDDEN", "message": "Internal API access denied"}
        )


def domain_error(e: LuckyLobbyException) -> HTTPException:
    """業務異常 -> 結構化的 HTTP 錯誤"""
    return HTTPException(status_code=e.status_code, detail=e.to_dict())
