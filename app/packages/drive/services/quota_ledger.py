"""配额账本：维护 公司 → 管理员 → 用户 三级容量模型。

所有跨多条记录的写入都在调用方的同一事务中完成，关键扣减使用带条件的
``UPDATE ... WHERE`` （比较并交换），并发请求无法同时花掉同一份剩余空间；
条件不满足时由调用方回滚，不会留下部分更新。
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Any, Optional

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import (
    DAILY_WARNING_PERCENT,
    FILES_WARNING_PERCENT,
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_FORBIDDEN,
    STORAGE_CRITICAL_PERCENT,
    STORAGE_WARNING_PERCENT,
)
from app.packages.drive.core.enums import FileCategoryEnum, QuotaReasonEnum, UploadStatusEnum, UserRoleEnum
from app.packages.drive.core.exceptions import (
    AppException,
    BelowAllocatedError,
    InsufficientAdminCapacityError,
    NotFoundError,
    QuotaExceededError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import today as tz_today
from app.packages.drive.crud.companies import company_crud
from app.packages.drive.crud.file_record import file_record_crud
from app.packages.drive.crud.usage import daily_usage_crud, type_usage_crud
from app.packages.drive.crud.users import user_crud
from app.packages.drive.models.company import Company
from app.packages.drive.models.file_record import FileRecord
from app.packages.drive.models.user import User
from app.packages.drive.services.quota_policy import PlanLimits, Violation, classify_mime, format_bytes


def _clamped_sub(column, amount: int):
    return case((column >= amount, column - amount), else_=0)


def _percentage(part: int, whole: int) -> float:
    if whole <= 0:
        return 100.0 if part > 0 else 0.0
    return round(part / whole * 100, 2)


class QuotaLedger:
    """三级配额账本。方法的 ``auto_commit=False`` 形式供编排层在更大的事务中复用。"""

    # ------------------------------------------------------------------
    # 可用容量
    # ------------------------------------------------------------------
    @staticmethod
    def available_for(user: User) -> int:
        """管理员需扣除已下发给成员的容量；其余角色只看自身使用量。"""
        committed = user.storage_used
        if user.role == UserRoleEnum.ADMIN.value:
            committed += user.allocated_to_users
        return max(0, user.storage_allocated - committed)

    @staticmethod
    def _read_available(db: Session, user_id: int, role: str) -> int:
        allocated, used, sub_allocated = (
            db.query(User.storage_allocated, User.storage_used, User.allocated_to_users)
            .filter(User.id == user_id)
            .one()
        )
        committed = used + (sub_allocated if role == UserRoleEnum.ADMIN.value else 0)
        return max(0, allocated - committed)

    # ------------------------------------------------------------------
    # 上传完成 / 文件删除
    # ------------------------------------------------------------------
    def apply_completed_upload(
        self,
        db: Session,
        *,
        user: User,
        size: int,
        mime_type: str,
        usage_day: Optional[date] = None,
        auto_commit: bool = True,
    ) -> None:
        """计入一次已完成的上传：用户已用、公司已用、类别与每日统计。

        用户行的扣减带容量条件，条件不满足时抛出 ``QuotaExceededError``，
        调用方必须回滚事务。
        """
        user_id, role, company_id = user.id, user.role, user.company_id
        committed = User.storage_used + size
        if role == UserRoleEnum.ADMIN.value:
            committed = committed + User.allocated_to_users
        result = db.execute(
            update(User)
            .where(User.id == user_id, committed <= User.storage_allocated)
            .values(storage_used=User.storage_used + size)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            available = self._read_available(db, user_id, role)
            logger.info("Ledger rejected %s bytes for user %s (available %s)", size, user_id, available)
            raise QuotaExceededError(
                [
                    Violation(
                        QuotaReasonEnum.ALLOCATION.value,
                        f"个人分配空间不足：剩余 {format_bytes(available)}（{available} 字节）",
                        available,
                        available,
                    )
                ]
            )

        if company_id is not None:
            db.execute(
                update(Company)
                .where(Company.id == company_id)
                .values(used_storage=Company.used_storage + size)
                .execution_options(synchronize_session=False)
            )
        type_usage_crud.add(db, user_id, classify_mime(mime_type), size=size)
        daily_usage_crud.add(db, user_id, usage_day or tz_today(), upload_size=size, upload_count=1)
        if auto_commit:
            db.commit()

    def apply_deleted_file(
        self,
        db: Session,
        *,
        user_id: int,
        company_id: Optional[int],
        size: int,
        mime_type: str,
        auto_commit: bool = True,
    ) -> None:
        """对称地释放已用容量，所有计数在 0 处截断。"""
        db.execute(
            update(User)
            .where(User.id == user_id)
            .values(storage_used=_clamped_sub(User.storage_used, size))
            .execution_options(synchronize_session=False)
        )
        if company_id is not None:
            db.execute(
                update(Company)
                .where(Company.id == company_id)
                .values(used_storage=_clamped_sub(Company.used_storage, size))
                .execution_options(synchronize_session=False)
            )
        type_usage_crud.subtract(db, user_id, classify_mime(mime_type), size=size)
        if auto_commit:
            db.commit()

    def record_download(self, db: Session, *, user_id: int, size: int) -> None:
        daily_usage_crud.add(db, user_id, tz_today(), download_size=size, download_count=1)
        db.commit()

    # ------------------------------------------------------------------
    # 容量分配
    # ------------------------------------------------------------------
    def set_company_total(self, db: Session, *, company_id: int, new_total: int, cascade: bool = True) -> Company:
        """调整公司总容量；低于已分配给成员的容量时拒绝且不做任何修改。

        ``cascade`` 为真时，同一事务内把公司所有管理员的分配额度同步为新总量。
        """
        minimum = get_settings().company_min_storage
        if new_total < minimum:
            raise AppException(
                f"公司存储容量不能小于 {format_bytes(minimum)}",
                HTTP_STATUS_BAD_REQUEST,
                {"minimum": minimum, "requested": new_total},
            )
        try:
            result = db.execute(
                update(Company)
                .where(Company.id == company_id, Company.allocated_to_users <= new_total)
                .values(total_storage=new_total)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                allocated = db.query(Company.allocated_to_users).filter(Company.id == company_id).scalar()
                if allocated is None:
                    raise NotFoundError("公司不存在")
                raise BelowAllocatedError(new_total, int(allocated))

            if cascade:
                admin_filter = (User.company_id == company_id, User.role == UserRoleEnum.ADMIN.value)
                admin_count = db.query(func.count(User.id)).filter(*admin_filter).scalar() or 0
                updated = db.execute(
                    update(User)
                    .where(*admin_filter, User.storage_used + User.allocated_to_users <= new_total)
                    .values(storage_allocated=new_total)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if updated != admin_count:
                    committed = (
                        db.query(func.max(User.storage_used + User.allocated_to_users)).filter(*admin_filter).scalar()
                        or 0
                    )
                    raise BelowAllocatedError(new_total, int(committed))
            db.commit()
        except Exception:
            db.rollback()
            raise

        company = company_crud.get(db, company_id)
        logger.info("Company %s total storage set to %s (cascade=%s)", company_id, new_total, cascade)
        return company

    def set_user_allocation(
        self, db: Session, *, admin: User, target: User, new_bytes: int, auto_commit: bool = True
    ) -> User:
        """管理员为成员设置分配额度，按差额从管理员剩余容量中扣除或归还。"""
        if admin.role != UserRoleEnum.ADMIN.value or admin.company_id is None:
            raise AppException("仅公司管理员可以分配成员容量", HTTP_STATUS_FORBIDDEN)
        if target.company_id != admin.company_id:
            raise AppException("只能为本公司成员分配容量", HTTP_STATUS_FORBIDDEN)
        if target.role != UserRoleEnum.USER.value:
            raise AppException("只能为普通成员分配容量", HTTP_STATUS_BAD_REQUEST)
        if new_bytes < 0:
            raise AppException("分配容量不能为负数", HTTP_STATUS_BAD_REQUEST)
        if new_bytes < target.storage_used:
            raise AppException(
                f"分配容量不能低于该成员已使用的 {format_bytes(target.storage_used)}",
                HTTP_STATUS_BAD_REQUEST,
                {"requested": new_bytes, "storageUsed": target.storage_used},
            )

        admin_id, target_id, company_id = admin.id, target.id, admin.company_id
        previous = target.storage_allocated
        previous_admin_id = target.allocated_by
        # 原额度由当前管理员授予时只结算差额，否则当前管理员承担全部新额度
        charged = previous if previous_admin_id == admin_id else 0
        admin_delta = new_bytes - charged
        company_delta = new_bytes - previous

        try:
            if previous_admin_id not in (None, admin_id) and previous:
                db.execute(
                    update(User)
                    .where(User.id == previous_admin_id)
                    .values(allocated_to_users=_clamped_sub(User.allocated_to_users, previous))
                    .execution_options(synchronize_session=False)
                )

            if admin_delta > 0:
                result = db.execute(
                    update(User)
                    .where(
                        User.id == admin_id,
                        User.storage_allocated - User.storage_used - User.allocated_to_users >= admin_delta,
                    )
                    .values(allocated_to_users=User.allocated_to_users + admin_delta)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    available = self._read_available(db, admin_id, UserRoleEnum.ADMIN.value)
                    raise InsufficientAdminCapacityError(available, admin_delta)
            elif admin_delta < 0:
                db.execute(
                    update(User)
                    .where(User.id == admin_id)
                    .values(allocated_to_users=_clamped_sub(User.allocated_to_users, -admin_delta))
                    .execution_options(synchronize_session=False)
                )

            result = db.execute(
                update(User)
                .where(User.id == target_id, User.storage_allocated == previous, User.storage_used <= new_bytes)
                .values(storage_allocated=new_bytes, allocated_by=admin_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AppException("成员容量已被修改，请刷新后重试", HTTP_STATUS_CONFLICT)

            if company_delta > 0:
                company_value = Company.allocated_to_users + company_delta
            else:
                company_value = _clamped_sub(Company.allocated_to_users, -company_delta)
            db.execute(
                update(Company)
                .where(Company.id == company_id)
                .values(allocated_to_users=company_value)
                .execution_options(synchronize_session=False)
            )
            if auto_commit:
                db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            "Admin %s set allocation of user %s from %s to %s bytes", admin_id, target_id, previous, new_bytes
        )
        return user_crud.get(db, target_id)

    # ------------------------------------------------------------------
    # 对账修复
    # ------------------------------------------------------------------
    @staticmethod
    def _recompute_member_usage(db: Session, user: User) -> None:
        rows = (
            db.query(FileRecord.mime_type, FileRecord.size_bytes)
            .filter(
                FileRecord.uploaded_by == user.id,
                FileRecord.upload_status == UploadStatusEnum.COMPLETED.value,
                FileRecord.is_deleted.is_(False),
            )
            .all()
        )
        totals: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        for mime_type, size in rows:
            bucket = totals[classify_mime(mime_type)]
            bucket[0] += 1
            bucket[1] += size
        user.storage_used = sum(size for _, size in rows)
        type_usage_crud.replace_for_user(db, user.id, {k: (v[0], v[1]) for k, v in totals.items()})

    def fix_allocations(self, db: Session, company: Company, *, auto_commit: bool = True) -> dict[str, Any]:
        """从文件记录与成员额度重新计算公司与管理员的统计字段，可重复执行。"""
        before = {
            "usedStorage": company.used_storage,
            "allocatedToUsers": company.allocated_to_users,
            "userCount": company.user_count,
        }
        members = user_crud.list_by_company(db, company.id)
        for member in members:
            self._recompute_member_usage(db, member)

        admins = [m for m in members if m.role == UserRoleEnum.ADMIN.value]
        regular = [m for m in members if m.role == UserRoleEnum.USER.value]
        admin_ids = {a.id for a in admins}
        fallback_admin_id = company.owner_id if company.owner_id in admin_ids else (admins[0].id if admins else None)
        if fallback_admin_id is not None:
            for member in regular:
                if len(admins) == 1 or member.allocated_by not in admin_ids:
                    member.allocated_by = fallback_admin_id

        company.allocated_to_users = sum(m.storage_allocated for m in regular)
        company.used_storage = sum(m.storage_used for m in members)
        company.user_count = len(members)
        for admin in admins:
            admin.storage_allocated = company.total_storage
            admin.allocated_to_users = sum(m.storage_allocated for m in regular if m.allocated_by == admin.id)

        db.add(company)
        if auto_commit:
            db.commit()
            db.refresh(company)

        report = {
            "companyId": company.id,
            "companyName": company.name,
            "before": before,
            "after": {
                "usedStorage": company.used_storage,
                "allocatedToUsers": company.allocated_to_users,
                "userCount": company.user_count,
            },
            "totalStorage": company.total_storage,
            "isOverAllocated": company.is_over_allocated,
            "overAllocatedBy": company.over_allocated_by,
            "isOverUsed": company.is_over_used,
            "overUsedBy": company.over_used_by,
        }
        if company.is_over_allocated:
            logger.warning(
                "Company %s is over-allocated by %s bytes", company.id, company.over_allocated_by
            )
        if company.is_over_used:
            logger.warning("Company %s uses %s bytes more than its total storage", company.id, company.over_used_by)
        return report

    def fix_all(self, db: Session) -> list[dict[str, Any]]:
        reports = [self.fix_allocations(db, company, auto_commit=False) for company in company_crud.list_all(db)]
        for user in user_crud.list_without_company(db):
            self._recompute_member_usage(db, user)
        db.commit()
        return reports

    # ------------------------------------------------------------------
    # 配额快照
    # ------------------------------------------------------------------
    def snapshot(self, db: Session, user: User, limits: Optional[PlanLimits] = None) -> dict[str, Any]:
        limits = limits or PlanLimits.from_settings()
        db.refresh(user)
        total = user.storage_allocated
        available = self.available_for(user)
        consumed = max(0, total - available)
        storage_pct = _percentage(consumed, total)

        _, file_count = file_record_crud.completed_totals(db, user.id)
        files_pct = _percentage(file_count, limits.max_files)

        today_usage = daily_usage_crud.get_for_day(db, user.id, tz_today())
        daily_used = today_usage.upload_size if today_usage else 0
        daily_pct = _percentage(daily_used, limits.daily_upload_limit)

        by_type = {category.value: {"count": 0, "size": 0} for category in FileCategoryEnum}
        for row in type_usage_crud.list_for_user(db, user.id):
            by_type[row.category] = {"count": row.file_count, "size": row.total_size}

        return {
            "plan": limits.name,
            "storage": {
                "used": user.storage_used,
                "allocatedToUsers": user.allocated_to_users if user.role == UserRoleEnum.ADMIN.value else 0,
                "total": total,
                "available": available,
                "percentage": storage_pct,
                "isNearLimit": storage_pct >= STORAGE_WARNING_PERCENT,
                "isCritical": storage_pct >= STORAGE_CRITICAL_PERCENT,
            },
            "files": {
                "count": file_count,
                "max": limits.max_files,
                "remaining": max(0, limits.max_files - file_count),
                "isNearLimit": files_pct >= FILES_WARNING_PERCENT,
            },
            "daily": {
                "used": daily_used,
                "limit": limits.daily_upload_limit,
                "remaining": max(0, limits.daily_upload_limit - daily_used),
                "percentage": daily_pct,
                "isNearLimit": daily_pct >= DAILY_WARNING_PERCENT,
            },
            "byType": by_type,
        }


quota_ledger = QuotaLedger()
