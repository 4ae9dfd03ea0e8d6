"""存储分配服务：平台向公司分配容量、管理员向成员分配容量。"""

from sqlalchemy.orm import Session

from app.packages.drive.core.constants import HTTP_STATUS_FORBIDDEN, HTTP_STATUS_OK
from app.packages.drive.core.exceptions import AppException, NotFoundError
from app.packages.drive.core.responses import create_response
from app.packages.drive.crud.users import user_crud
from app.packages.drive.models.user import User
from app.packages.drive.services.auth_service import serialize_user
from app.packages.drive.services.company_service import serialize_company
from app.packages.drive.services.quota_ledger import quota_ledger


class StorageService:
    def allocate_to_company(self, db: Session, current_user: User, *, company_id: int, storage_bytes: int) -> dict:
        if not current_user.is_super_admin:
            raise AppException("仅超级管理员可以为公司分配容量", HTTP_STATUS_FORBIDDEN)
        company = quota_ledger.set_company_total(db, company_id=company_id, new_total=storage_bytes, cascade=True)
        return create_response("公司容量分配成功", serialize_company(company), HTTP_STATUS_OK)

    def allocate_to_user(self, db: Session, current_user: User, *, user_id: int, storage_bytes: int) -> dict:
        target = user_crud.get(db, user_id)
        if target is None:
            raise NotFoundError("用户不存在")
        member = quota_ledger.set_user_allocation(db, admin=current_user, target=target, new_bytes=storage_bytes)
        db.refresh(current_user)
        data = {
            "user": serialize_user(member),
            "admin_available": quota_ledger.available_for(current_user),
            "admin_allocated_to_users": current_user.allocated_to_users,
        }
        return create_response("成员容量分配成功", data, HTTP_STATUS_OK)

    def get_user_storage(self, db: Session, current_user: User, user_id: int) -> dict:
        """本人、同公司管理员或超级管理员可以查看成员的容量信息。"""
        target = user_crud.get(db, user_id)
        if target is None:
            raise NotFoundError("用户不存在")
        allowed = (
            current_user.id == target.id
            or current_user.is_super_admin
            or (current_user.is_admin and current_user.company_id == target.company_id)
        )
        if not allowed:
            raise AppException("无权查看该用户的容量信息", HTTP_STATUS_FORBIDDEN)
        data = {**serialize_user(target), "available": quota_ledger.available_for(target)}
        return create_response("获取用户容量成功", data, HTTP_STATUS_OK)


storage_service = StorageService()
