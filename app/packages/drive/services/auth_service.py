"""认证服务：公司注册（创建公司与首位管理员）与登录。"""

from typing import Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import (
    ACCESS_TOKEN_TYPE,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_FORBIDDEN,
    HTTP_STATUS_OK,
    HTTP_STATUS_UNAUTHORIZED,
)
from app.packages.drive.core.enums import UserRoleEnum
from app.packages.drive.core.exceptions import AppException
from app.packages.drive.core.logger import logger
from app.packages.drive.core.responses import create_response
from app.packages.drive.core.security import create_access_token, get_password_hash, verify_password
from app.packages.drive.core.session import create_session
from app.packages.drive.crud.companies import company_crud
from app.packages.drive.crud.users import user_crud
from app.packages.drive.models.company import Company
from app.packages.drive.models.user import User


def serialize_user(user: User) -> dict:
    return {
        "user_id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "company_id": user.company_id,
        "storage_allocated": user.storage_allocated,
        "storage_used": user.storage_used,
        "allocated_to_users": user.allocated_to_users,
    }


class AuthService:
    def register_company(
        self,
        db: Session,
        *,
        username: str,
        password: str,
        company_name: str,
        email: Optional[str] = None,
    ) -> dict:
        """创建公司及其所有者管理员，管理员的分配额度等于公司总容量。"""
        if user_crud.get_by_username(db, username):
            raise AppException(msg="用户名已存在", code=HTTP_STATUS_CONFLICT)
        if email and user_crud.get_by_email(db, email):
            raise AppException(msg="邮箱已被使用", code=HTTP_STATUS_CONFLICT)
        if company_crud.get_by_name(db, company_name):
            raise AppException(msg="公司名称已存在", code=HTTP_STATUS_CONFLICT)

        total = get_settings().company_default_storage
        try:
            company = Company(name=company_name, total_storage=total, user_count=1)
            db.add(company)
            db.flush()
            admin = User(
                username=username,
                email=email,
                hashed_password=get_password_hash(password),
                role=UserRoleEnum.ADMIN.value,
                company_id=company.id,
                storage_allocated=total,
            )
            db.add(admin)
            db.flush()
            company.owner_id = admin.id
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(admin)
        logger.info("Registered company %s (id=%s) with owner %s", company_name, company.id, username)
        return create_response(
            "注册成功",
            {**serialize_user(admin), "company": {"id": company.id, "name": company.name, "total_storage": total}},
            HTTP_STATUS_OK,
        )

    def login(self, db: Session, *, username: str, password: str) -> dict:
        user = user_crud.get_by_username(db, username)
        if user is None or not verify_password(password, user.hashed_password):
            logger.info("Failed login attempt for %s", username)
            raise AppException(msg="用户名或密码错误", code=HTTP_STATUS_UNAUTHORIZED)
        if not user.is_active:
            raise AppException(msg="用户未激活", code=HTTP_STATUS_FORBIDDEN)

        ttl_seconds = max(get_settings().access_token_expire_minutes, 1) * 60
        session_id = create_session(user.id, ttl_seconds)
        access_token = create_access_token({"user_id": user.id, "username": user.username, "sid": session_id})
        return create_response(
            "登录成功",
            {"access_token": access_token, "token_type": ACCESS_TOKEN_TYPE, "user": serialize_user(user)},
            HTTP_STATUS_OK,
        )


auth_service = AuthService()
