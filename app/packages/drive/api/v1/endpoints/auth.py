"""认证相关路由定义。"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.auth import (
    LoginRequest,
    LogoutResponse,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
)
from app.packages.drive.core.constants import HTTP_STATUS_OK
from app.packages.drive.core.dependencies import get_current_active_user, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.core.session import delete_session
from app.packages.drive.models.user import User
from app.packages.drive.services.auth_service import auth_service

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=RegisterResponse)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> RegisterResponse:
    """注册公司及其所有者账号。"""
    return auth_service.register_company(
        db,
        username=payload.username,
        password=payload.password,
        company_name=payload.company_name,
        email=payload.email,
    )


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse:
    """校验凭证并签发访问令牌。"""
    return auth_service.login(db, username=payload.username, password=payload.password)


@router.post("/logout", response_model=LogoutResponse)
def logout(request: Request, current_user: User = Depends(get_current_active_user)) -> LogoutResponse:
    """退出登录，前端需删除本地缓存的令牌。"""
    session_id = getattr(request.state, "session_id", None)
    if session_id:
        delete_session(session_id)
    return create_response("退出登录成功", None, HTTP_STATUS_OK)
