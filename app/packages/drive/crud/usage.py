"""用量统计数据访问：每日用量与类别用量的增量写入。"""

from datetime import date
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from app.packages.drive.core.constants import DAILY_USAGE_MAX_ENTRIES
from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.usage import DailyUsage, TypeUsage


def _clamped_decrement(column, amount: int):
    return case((column >= amount, column - amount), else_=0)


class CRUDDailyUsage(CRUDBase[DailyUsage]):
    def get_for_day(self, db: Session, user_id: int, day: date) -> Optional[DailyUsage]:
        return self.query(db).filter(DailyUsage.user_id == user_id, DailyUsage.usage_date == day).first()

    def add(
        self,
        db: Session,
        user_id: int,
        day: date,
        *,
        upload_size: int = 0,
        upload_count: int = 0,
        download_size: int = 0,
        download_count: int = 0,
    ) -> None:
        """在调用方事务中累加当天用量，不存在时新建并裁剪最旧的条目。"""
        result = db.execute(
            update(DailyUsage)
            .where(DailyUsage.user_id == user_id, DailyUsage.usage_date == day)
            .values(
                upload_size=DailyUsage.upload_size + upload_size,
                upload_count=DailyUsage.upload_count + upload_count,
                download_size=DailyUsage.download_size + download_size,
                download_count=DailyUsage.download_count + download_count,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return
        db.add(
            DailyUsage(
                user_id=user_id,
                usage_date=day,
                upload_size=upload_size,
                upload_count=upload_count,
                download_size=download_size,
                download_count=download_count,
            )
        )
        db.flush()
        self._prune_entries(db, user_id)

    def _prune_entries(self, db: Session, user_id: int) -> None:
        stale_ids = [
            row_id
            for (row_id,) in db.query(DailyUsage.id)
            .filter(DailyUsage.user_id == user_id)
            .order_by(DailyUsage.usage_date.desc())
            .offset(DAILY_USAGE_MAX_ENTRIES)
            .all()
        ]
        if stale_ids:
            db.query(DailyUsage).filter(DailyUsage.id.in_(stale_ids)).delete(synchronize_session=False)

    def delete_before(self, db: Session, day: date) -> int:
        return db.query(DailyUsage).filter(DailyUsage.usage_date < day).delete(synchronize_session=False)


class CRUDTypeUsage(CRUDBase[TypeUsage]):
    def list_for_user(self, db: Session, user_id: int) -> list[TypeUsage]:
        return self.query(db).filter(TypeUsage.user_id == user_id).all()

    def add(self, db: Session, user_id: int, category: str, *, size: int) -> None:
        result = db.execute(
            update(TypeUsage)
            .where(TypeUsage.user_id == user_id, TypeUsage.category == category)
            .values(file_count=TypeUsage.file_count + 1, total_size=TypeUsage.total_size + size)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            db.add(TypeUsage(user_id=user_id, category=category, file_count=1, total_size=size))
            db.flush()

    def subtract(self, db: Session, user_id: int, category: str, *, size: int) -> None:
        db.execute(
            update(TypeUsage)
            .where(TypeUsage.user_id == user_id, TypeUsage.category == category)
            .values(
                file_count=_clamped_decrement(TypeUsage.file_count, 1),
                total_size=_clamped_decrement(TypeUsage.total_size, size),
            )
            .execution_options(synchronize_session=False)
        )

    def replace_for_user(self, db: Session, user_id: int, totals: dict[str, tuple[int, int]]) -> None:
        """用重新计算的 ``{category: (count, size)}`` 覆盖该用户的类别统计。"""
        db.query(TypeUsage).filter(TypeUsage.user_id == user_id).delete(synchronize_session=False)
        for category, (count, size) in totals.items():
            db.add(TypeUsage(user_id=user_id, category=category, file_count=count, total_size=size))
        db.flush()


daily_usage_crud = CRUDDailyUsage(DailyUsage)
type_usage_crud = CRUDTypeUsage(TypeUsage)
