"""文件记录数据访问：状态条件更新与配额派生统计。"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.packages.drive.core.enums import UploadStatusEnum
from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.file_record import FileRecord

OPEN_STATUSES = (UploadStatusEnum.PENDING.value, UploadStatusEnum.UPLOADING.value)


class CRUDFileRecord(CRUDBase[FileRecord]):
    def get_owned(self, db: Session, file_id: int, user_id: int) -> Optional[FileRecord]:
        return self.query(db).filter(FileRecord.id == file_id, FileRecord.uploaded_by == user_id).first()

    def mark_completed(
        self,
        db: Session,
        file_id: int,
        *,
        etag: Optional[str],
        completed_at: datetime,
    ) -> bool:
        """仅当记录仍处于未完成状态时置为 ``completed``，返回是否命中。

        条件更新保证同一文件的并发确认只有一个能成功，不提交事务。
        """
        result = db.execute(
            update(FileRecord)
            .where(
                FileRecord.id == file_id,
                FileRecord.upload_status.in_(OPEN_STATUSES),
                FileRecord.is_deleted.is_(False),
            )
            .values(
                upload_status=UploadStatusEnum.COMPLETED.value,
                etag=etag,
                upload_completed_at=completed_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_deleted(self, db: Session, file_id: int, *, deleted_at: datetime) -> bool:
        """软删除一条已完成记录；重复删除返回 ``False``，保证容量只释放一次。"""
        result = db.execute(
            update(FileRecord)
            .where(
                FileRecord.id == file_id,
                FileRecord.upload_status == UploadStatusEnum.COMPLETED.value,
                FileRecord.is_deleted.is_(False),
            )
            .values(is_deleted=True, deleted_at=deleted_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_completed(self, db: Session, user_id: int, *, skip: int = 0, limit: int = 50) -> tuple[int, list[FileRecord]]:
        query = self.query(db).filter(
            FileRecord.uploaded_by == user_id,
            FileRecord.upload_status == UploadStatusEnum.COMPLETED.value,
        )
        total = query.count()
        items = query.order_by(FileRecord.id.desc()).offset(skip).limit(limit).all()
        return total, items

    def list_open(self, db: Session, user_id: int) -> list[FileRecord]:
        return (
            self.query(db)
            .filter(FileRecord.uploaded_by == user_id, FileRecord.upload_status.in_(OPEN_STATUSES))
            .order_by(FileRecord.upload_initiated_at.desc())
            .all()
        )

    def list_stale(self, db: Session, before: datetime, *, limit: int = 500) -> list[FileRecord]:
        return (
            self.query(db, include_deleted=True)
            .filter(FileRecord.upload_status.in_(OPEN_STATUSES), FileRecord.upload_initiated_at < before)
            .order_by(FileRecord.id.asc())
            .limit(limit)
            .all()
        )

    def list_purgeable(self, db: Session, before: datetime, *, limit: int = 500) -> list[FileRecord]:
        return (
            self.query(db, include_deleted=True)
            .filter(FileRecord.is_deleted.is_(True), FileRecord.deleted_at < before)
            .order_by(FileRecord.id.asc())
            .limit(limit)
            .all()
        )

    def list_by_company(self, db: Session, company_id: int) -> list[FileRecord]:
        return self.query(db, include_deleted=True).filter(FileRecord.company_id == company_id).all()

    def completed_totals(self, db: Session, user_id: int) -> tuple[int, int]:
        """返回 ``(已完成文件总字节数, 文件数)``，仅统计未删除的已完成文件。"""
        total, count = (
            db.query(func.coalesce(func.sum(FileRecord.size_bytes), 0), func.count(FileRecord.id))
            .filter(
                FileRecord.uploaded_by == user_id,
                FileRecord.upload_status == UploadStatusEnum.COMPLETED.value,
                FileRecord.is_deleted.is_(False),
            )
            .one()
        )
        return int(total or 0), int(count or 0)


file_record_crud = CRUDFileRecord(FileRecord)
