"""公司服务：公司信息、容量调整、成员管理、对账修复与级联删除。"""

from typing import Any, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_FORBIDDEN,
    HTTP_STATUS_OK,
)
from app.packages.drive.core.enums import UserRoleEnum
from app.packages.drive.core.exceptions import AppException, NotFoundError, StorageProviderError
from app.packages.drive.core.logger import logger
from app.packages.drive.core.responses import create_response
from app.packages.drive.core.security import get_password_hash
from app.packages.drive.crud.companies import company_crud
from app.packages.drive.crud.file_record import file_record_crud
from app.packages.drive.crud.users import user_crud
from app.packages.drive.models.company import Company
from app.packages.drive.models.file_record import FileRecord
from app.packages.drive.models.usage import DailyUsage, TypeUsage
from app.packages.drive.models.user import User
from app.packages.drive.services.auth_service import serialize_user
from app.packages.drive.services.object_store import get_object_store
from app.packages.drive.services.quota_ledger import quota_ledger


def serialize_company(company: Company) -> dict[str, Any]:
    return {
        "id": company.id,
        "name": company.name,
        "owner_id": company.owner_id,
        "total_storage": company.total_storage,
        "used_storage": company.used_storage,
        "available_storage": company.available_storage,
        "allocated_to_users": company.allocated_to_users,
        "user_count": company.user_count,
        "is_active": company.is_active,
        "is_over_allocated": company.is_over_allocated,
        "over_allocated_by": company.over_allocated_by,
        "is_over_used": company.is_over_used,
        "over_used_by": company.over_used_by,
    }


class CompanyService:
    def _resolve_company(self, db: Session, current_user: User, company_id: Optional[int] = None) -> Company:
        """超级管理员可指定任意公司，其他角色只能访问自己所属的公司。"""
        if company_id is None:
            company_id = current_user.company_id
        elif not current_user.is_super_admin and company_id != current_user.company_id:
            raise AppException("无权访问该公司", HTTP_STATUS_FORBIDDEN)
        if company_id is None:
            raise NotFoundError("当前用户未归属任何公司")
        company = company_crud.get(db, company_id)
        if company is None:
            raise NotFoundError("公司不存在")
        return company

    @staticmethod
    def _require_admin(current_user: User) -> None:
        if not (current_user.is_admin or current_user.is_super_admin):
            raise AppException("需要管理员权限", HTTP_STATUS_FORBIDDEN)

    def get_my_company(self, db: Session, current_user: User) -> dict:
        company = self._resolve_company(db, current_user)
        return create_response("获取公司信息成功", serialize_company(company), HTTP_STATUS_OK)

    def get_summary(self, db: Session, current_user: User, company_id: Optional[int] = None) -> dict:
        self._require_admin(current_user)
        company = self._resolve_company(db, current_user, company_id)
        members = user_crud.list_by_company(db, company.id)
        data = {
            **serialize_company(company),
            "available_to_allocate": quota_ledger.available_for(current_user) if current_user.is_admin else None,
            "members": [serialize_user(member) for member in members],
        }
        return create_response("获取公司概览成功", data, HTTP_STATUS_OK)

    def update_storage(self, db: Session, current_user: User, company_id: int, total_storage: int) -> dict:
        """超级管理员或公司所有者调整公司总容量，并同步管理员额度。"""
        company = company_crud.get(db, company_id)
        if company is None:
            raise NotFoundError("公司不存在")
        if not (current_user.is_super_admin or company.owner_id == current_user.id):
            raise AppException("仅超级管理员或公司所有者可以调整公司容量", HTTP_STATUS_FORBIDDEN)
        company = quota_ledger.set_company_total(db, company_id=company_id, new_total=total_storage, cascade=True)
        return create_response("公司容量更新成功", serialize_company(company), HTTP_STATUS_OK)

    def fix_allocations(self, db: Session, current_user: User, company_id: Optional[int] = None) -> dict:
        self._require_admin(current_user)
        company = self._resolve_company(db, current_user, company_id)
        report = quota_ledger.fix_allocations(db, company)
        return create_response("容量统计已修复", report, HTTP_STATUS_OK)

    def add_member(
        self,
        db: Session,
        current_user: User,
        *,
        username: str,
        password: str,
        email: Optional[str] = None,
        storage_allocated: int = 0,
    ) -> dict:
        """管理员添加团队成员，可选地同时为其分配容量。"""
        if not current_user.is_admin or current_user.company_id is None:
            raise AppException("仅公司管理员可以添加成员", HTTP_STATUS_FORBIDDEN)
        if user_crud.get_by_username(db, username):
            raise AppException("用户名已存在", HTTP_STATUS_CONFLICT)
        if email and user_crud.get_by_email(db, email):
            raise AppException("邮箱已被使用", HTTP_STATUS_CONFLICT)
        if storage_allocated < 0:
            raise AppException("分配容量不能为负数", HTTP_STATUS_BAD_REQUEST)

        admin = current_user
        company_id = admin.company_id
        # 创建账号、成员计数与容量分配在同一事务内提交
        try:
            member = user_crud.create(
                db,
                {
                    "username": username,
                    "email": email,
                    "hashed_password": get_password_hash(password),
                    "role": UserRoleEnum.USER.value,
                    "company_id": company_id,
                    "added_by": admin.id,
                    "storage_allocated": 0,
                },
                auto_commit=False,
            )
            company = company_crud.get(db, company_id)
            company.user_count = (company.user_count or 0) + 1
            db.flush()
            if storage_allocated:
                quota_ledger.set_user_allocation(
                    db, admin=admin, target=member, new_bytes=storage_allocated, auto_commit=False
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(member)
        logger.info(
            "Admin %s added member %s to company %s with %s bytes", admin.id, username, company_id, storage_allocated
        )
        return create_response("成员添加成功", serialize_user(member), HTTP_STATUS_OK)

    def delete_company(self, db: Session, current_user: User, company_id: int) -> dict:
        """级联删除租户：先尽力删除存储对象，再在一个事务里移除文件、成员与公司。"""
        if not current_user.is_super_admin:
            raise AppException("仅超级管理员可以删除公司", HTTP_STATUS_FORBIDDEN)
        company = company_crud.get(db, company_id)
        if company is None:
            raise NotFoundError("公司不存在")

        store = get_object_store()
        records = file_record_crud.list_by_company(db, company_id)
        failed = 0
        for record in records:
            try:
                if record.is_multipart and not record.is_completed:
                    store.abort_multipart(record.storage_key, record.upload_id)
                store.delete_object(record.storage_key)
            except StorageProviderError:
                failed += 1
                logger.warning("Failed to delete object %s while deleting company %s", record.storage_key, company_id)

        member_ids = [m.id for m in user_crud.list_by_company(db, company_id)]
        try:
            db.query(FileRecord).filter(
                (FileRecord.company_id == company_id) | FileRecord.uploaded_by.in_(member_ids)
            ).delete(synchronize_session=False)
            db.query(DailyUsage).filter(DailyUsage.user_id.in_(member_ids)).delete(synchronize_session=False)
            db.query(TypeUsage).filter(TypeUsage.user_id.in_(member_ids)).delete(synchronize_session=False)
            db.query(User).filter(User.id.in_(member_ids)).delete(synchronize_session=False)
            db.query(Company).filter(Company.id == company_id).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.expunge_all()
        logger.info(
            "Deleted company %s with %s members and %s files (%s object deletions failed)",
            company_id, len(member_ids), len(records), failed,
        )
        return create_response(
            "公司已删除",
            {"company_id": company_id, "deleted_users": len(member_ids), "deleted_files": len(records), "failed_objects": failed},
            HTTP_STATUS_OK,
        )


company_service = CompanyService()
