"""后台对账清理：回收过期的未完成上传、清除超过保留期的已删除文件。

单个条目失败只记录日志并继续处理下一个，整个任务从不向调度器抛出异常。
调度使用 APScheduler ``BackgroundScheduler``；跨进程互斥依赖 ``TaskLock``。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import FILES_WARNING_PERCENT, STORAGE_WARNING_PERCENT
from app.packages.drive.core.enums import UploadStatusEnum
from app.packages.drive.core.locks import TaskLock
from app.packages.drive.core.logger import get_logger
from app.packages.drive.core.timezone import utcnow
from app.packages.drive.crud.file_record import file_record_crud
from app.packages.drive.crud.usage import daily_usage_crud
from app.packages.drive.db import session as db_session
from app.packages.drive.models.file_record import FileRecord
from app.packages.drive.models.user import User
from app.packages.drive.services.object_store import ObjectStore, get_object_store

logger = get_logger("sweeper")


@dataclass
class SweepReport:
    skipped: bool = False
    stale_removed: int = 0
    purged: int = 0
    usage_rows_pruned: int = 0
    failures: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ReconciliationSweeper:
    def __init__(
        self,
        store_provider: Callable[[], ObjectStore] = get_object_store,
        session_factory: Optional[Callable[[], Session]] = None,
    ) -> None:
        self._store_provider = store_provider
        self._session_factory = session_factory
        self._lock = TaskLock("sweeper", get_settings().sweeper_lock_ttl_seconds)

    def _open_session(self) -> Session:
        factory = self._session_factory or db_session.SessionLocal
        return factory()

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------
    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        if not self._lock.acquire():
            logger.info("Sweep already running elsewhere, skipping this run")
            return SweepReport(skipped=True)
        report = SweepReport()
        try:
            now = now or utcnow()
            with self._open_session() as db:
                self._sweep_stale(db, now, report)
                self._purge_deleted(db, now, report)
                self._prune_daily_usage(db, now, report)
        except Exception:
            # 单次运行失败不影响后续调度
            logger.exception("Sweep run aborted")
            report.failures += 1
        finally:
            self._lock.release()
        logger.info(
            "Sweep finished: stale_removed=%s purged=%s usage_pruned=%s failures=%s",
            report.stale_removed, report.purged, report.usage_rows_pruned, report.failures,
        )
        return report

    # ------------------------------------------------------------------
    # 各清理阶段
    # ------------------------------------------------------------------
    def _sweep_stale(self, db: Session, now: datetime, report: SweepReport) -> None:
        """超过阈值仍未完成的上传：中止分片会话、删除可能已上传的对象、移除记录。"""
        threshold = now - timedelta(hours=get_settings().stale_upload_hours)
        store = self._store_provider()
        for record in file_record_crud.list_stale(db, threshold):
            file_id, key = record.id, record.storage_key
            try:
                if record.is_multipart:
                    store.abort_multipart(key, record.upload_id)
                if store.head_object(key) is not None:
                    store.delete_object(key)
                db.delete(record)
                db.commit()
                report.stale_removed += 1
            except Exception:
                db.rollback()
                report.failures += 1
                logger.exception("Failed to clean stale upload file=%s key=%s", file_id, key)

    def _purge_deleted(self, db: Session, now: datetime, report: SweepReport) -> None:
        """软删除超过保留期的文件：删除对象后物理删除记录，对象已不存在也视为成功。"""
        threshold = now - timedelta(days=get_settings().deleted_retention_days)
        store = self._store_provider()
        for record in file_record_crud.list_purgeable(db, threshold):
            file_id, key = record.id, record.storage_key
            try:
                store.delete_object(key)
                db.delete(record)
                db.commit()
                report.purged += 1
            except Exception:
                db.rollback()
                report.failures += 1
                logger.exception("Failed to purge deleted file=%s key=%s", file_id, key)

    def _prune_daily_usage(self, db: Session, now: datetime, report: SweepReport) -> None:
        cutoff = (now - timedelta(days=get_settings().daily_usage_retention_days)).date()
        try:
            report.usage_rows_pruned = daily_usage_crud.delete_before(db, cutoff)
            db.commit()
        except Exception:
            db.rollback()
            report.failures += 1
            logger.exception("Failed to prune daily usage before %s", cutoff)

    # ------------------------------------------------------------------
    # 配额预警扫描
    # ------------------------------------------------------------------
    def scan_quota_warnings(self) -> dict:
        """统计接近存储或文件数上限的用户，仅输出日志。"""
        settings = get_settings()
        with self._open_session() as db:
            near_storage = (
                db.query(func.count(User.id))
                .filter(
                    User.storage_allocated > 0,
                    User.storage_used * 100 >= User.storage_allocated * STORAGE_WARNING_PERCENT,
                )
                .scalar()
                or 0
            )
            file_threshold = settings.plan_max_files * FILES_WARNING_PERCENT / 100
            counts = (
                db.query(FileRecord.uploaded_by, func.count(FileRecord.id))
                .filter(
                    FileRecord.upload_status == UploadStatusEnum.COMPLETED.value,
                    FileRecord.is_deleted.is_(False),
                )
                .group_by(FileRecord.uploaded_by)
                .all()
            )
            near_files = sum(1 for _, count in counts if count >= file_threshold)
        if near_storage or near_files:
            logger.warning("Quota warning: %s users near storage limit, %s near file limit", near_storage, near_files)
        return {"near_storage": int(near_storage), "near_files": near_files}


sweeper = ReconciliationSweeper()

_scheduler: Optional[BackgroundScheduler] = None


def _run_scheduled_sweep() -> None:
    sweeper.run_once()


def _run_scheduled_warning_scan() -> None:
    try:
        sweeper.scan_quota_warnings()
    except Exception:
        logger.exception("Quota warning scan failed")


def start_scheduler() -> Optional[BackgroundScheduler]:
    """启动后台调度；``SWEEPER_ENABLED=false`` 时不启动。"""
    global _scheduler
    settings = get_settings()
    if not settings.sweeper_enabled:
        logger.info("Sweeper disabled by configuration")
        return None
    if _scheduler is not None and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(daemon=True, timezone=settings.timezone_info)
    scheduler.add_job(
        _run_scheduled_sweep,
        "interval",
        seconds=settings.sweeper_interval_seconds,
        id="reconciliation_sweep",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(settings.timezone_info),
    )
    scheduler.add_job(
        _run_scheduled_warning_scan,
        "interval",
        seconds=settings.quota_warning_interval_seconds,
        id="quota_warning_scan",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    _scheduler = scheduler
    logger.info("Sweeper scheduled every %s seconds", settings.sweeper_interval_seconds)
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Sweeper scheduler stopped")
    _scheduler = None
