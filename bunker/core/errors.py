"""
Game error taxonomy
游戏错误类型 - 基于 HTTPException，服务层直接抛出
"""

from typing import Optional, Dict
from fastapi import HTTPException, status


class GameError(HTTPException):
    """Base error carrying a stable machine-readable code"""

    status_code_default = status.HTTP_400_BAD_REQUEST
    code = "GAME_ERROR"

    def __init__(self, detail: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=self.status_code_default, detail=detail, headers=headers)

    def to_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class Unauthorized(GameError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"

    def __init__(self, detail: str = "未提供有效的认证凭据"):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(GameError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFound(GameError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class PreconditionFailed(GameError):
    """Wrong phase, already used, room full and similar state conflicts"""
    status_code_default = status.HTTP_409_CONFLICT
    code = "PRECONDITION_FAILED"


class ValidationFailed(GameError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_FAILED"


class TooManyRequests(GameError):
    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS
    code = "TOO_MANY_REQUESTS"

    def __init__(self, detail: str = "请求过于频繁，请稍后再试", retry_after: Optional[int] = None):
        headers = {"Retry-After": str(retry_after)} if retry_after else None
        super().__init__(detail, headers=headers)


class Internal(GameError):
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL"
