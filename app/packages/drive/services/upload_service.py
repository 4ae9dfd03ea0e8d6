"""上传编排服务：两阶段直传协议（申请 → 客户端直传存储 → 确认）。

状态机：``none → pending|uploading → completed``，或被移除（取消 / 清理任务 / 确认失败）。

- 申请阶段只做配额预检并签发直传链接，不预留容量；
- 确认阶段以存储中的真实对象为准核验大小，再在同一事务里完成
  "记录置为 completed" 与 "账本计入"，两者要么同时生效要么都不生效；
- 文件字节从不经过 API 服务（本地存储模式下由 ``/local-objects`` 模拟存储端）。
"""

from __future__ import annotations

import math
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import HTTP_STATUS_BAD_REQUEST, MAX_MULTIPART_PARTS
from app.packages.drive.core.enums import UploadStatusEnum
from app.packages.drive.core.exceptions import (
    AlreadyFinalizedError,
    AppException,
    NotFoundError,
    ObjectMissingError,
    QuotaExceededError,
    SizeMismatchError,
    StorageProviderError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import format_datetime, today as tz_today, utcnow
from app.packages.drive.crud.companies import company_crud
from app.packages.drive.crud.file_record import file_record_crud
from app.packages.drive.crud.usage import daily_usage_crud
from app.packages.drive.models.file_record import FileRecord
from app.packages.drive.models.user import User
from app.packages.drive.services.object_store import CompletedPart, ObjectStore, get_object_store, sanitize_filename
from app.packages.drive.services.quota_ledger import quota_ledger
from app.packages.drive.services.quota_policy import (
    CompanyTotals,
    DailyTotals,
    PlanLimits,
    PolicyContext,
    PolicyDecision,
    UploadRequest,
    UsageTotals,
    evaluate,
)


def serialize_file(record: FileRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "originalName": record.original_name,
        "filename": record.filename,
        "size": record.size_bytes,
        "mimeType": record.mime_type,
        "storageType": record.storage_type,
        "storageKey": record.storage_key,
        "uploadStatus": record.upload_status,
        "multipart": record.is_multipart,
        "uploadId": record.upload_id,
        "partSize": record.part_size,
        "partCount": record.part_count,
        "etag": record.etag,
        "uploadedBy": record.uploaded_by,
        "companyId": record.company_id,
        "uploadInitiatedAt": format_datetime(record.upload_initiated_at),
        "uploadCompletedAt": format_datetime(record.upload_completed_at),
    }


def plan_parts(size: int, preferred_part_size: int) -> tuple[int, int]:
    """返回 ``(分片大小, 分片数)``；分片数超过存储上限时放大分片。"""
    part_size = max(1, preferred_part_size)
    part_count = max(1, math.ceil(size / part_size))
    if part_count > MAX_MULTIPART_PARTS:
        part_size = math.ceil(size / MAX_MULTIPART_PARTS)
        part_count = max(1, math.ceil(size / part_size))
    return part_size, part_count


class UploadService:
    def __init__(self, store_provider: Callable[[], ObjectStore] = get_object_store) -> None:
        self._store_provider = store_provider

    @property
    def store(self) -> ObjectStore:
        return self._store_provider()

    # ------------------------------------------------------------------
    # 配额预检
    # ------------------------------------------------------------------
    def _policy_context(self, db: Session, user: User) -> PolicyContext:
        used, file_count = file_record_crud.completed_totals(db, user.id)
        today_usage = daily_usage_crud.get_for_day(db, user.id, tz_today())
        company_totals = None
        if user.company_id is not None:
            company = company_crud.get(db, user.company_id)
            if company is not None:
                company_totals = CompanyTotals(used=company.used_storage, total=company.total_storage)
        return PolicyContext(
            user_today=DailyTotals(
                upload_size=today_usage.upload_size if today_usage else 0,
                upload_count=today_usage.upload_count if today_usage else 0,
            ),
            user_totals=UsageTotals(used=used, file_count=file_count, available=quota_ledger.available_for(user)),
            company_totals=company_totals,
        )

    def check_quota(self, db: Session, user: User, *, size: int, mime_type: str) -> PolicyDecision:
        return evaluate(
            UploadRequest(size=size, mimetype=(mime_type or "").lower()),
            self._policy_context(db, user),
            PlanLimits.from_settings(),
        )

    # ------------------------------------------------------------------
    # 申请上传
    # ------------------------------------------------------------------
    def init_upload(
        self,
        db: Session,
        user: User,
        *,
        filename: str,
        size: int,
        mime_type: str,
        use_multipart: Optional[bool] = None,
    ) -> dict[str, Any]:
        settings = get_settings()
        mime_type = (mime_type or "application/octet-stream").lower()
        decision = self.check_quota(db, user, size=size, mime_type=mime_type)
        if not decision.allowed:
            logger.info("Upload init rejected for user %s: %s", user.id, ",".join(decision.reasons))
            raise QuotaExceededError(decision.violations)

        store = self.store
        tenant = f"company-{user.company_id}" if user.company_id is not None else "platform"
        key = store.make_unique_key(user.id, filename, f"{settings.upload_key_folder}/{tenant}")
        multipart = use_multipart if use_multipart is not None else size > settings.multipart_threshold
        record_data = {
            "original_name": filename,
            "filename": sanitize_filename(filename),
            "size_bytes": size,
            "mime_type": mime_type,
            "storage_type": store.storage_type,
            "storage_key": key,
            "upload_initiated_at": utcnow(),
            "uploaded_by": user.id,
            "company_id": user.company_id,
        }

        if not multipart:
            presigned = store.create_presigned_upload(key, mime_type, settings.upload_url_ttl_seconds)
            record = file_record_crud.create(db, {**record_data, "upload_status": UploadStatusEnum.PENDING.value})
            logger.info("Upload initiated file=%s user=%s size=%s key=%s", record.id, user.id, size, key)
            return {
                "fileId": record.id,
                "storageKey": key,
                "useMultipart": False,
                "uploadUrl": presigned.url,
                "method": presigned.method,
                "headers": presigned.headers,
                "expiresIn": presigned.expires_in,
                "quota": quota_ledger.snapshot(db, user),
            }

        part_size, part_count = plan_parts(size, settings.multipart_part_size)
        ttl = settings.multipart_url_ttl_seconds
        upload_id = store.initiate_multipart(key, mime_type)
        try:
            parts = []
            for number in range(1, part_count + 1):
                presigned = store.create_presigned_part(key, upload_id, number, ttl)
                parts.append({"partNumber": number, "url": presigned.url, "method": presigned.method})
            record = file_record_crud.create(
                db,
                {
                    **record_data,
                    "upload_status": UploadStatusEnum.UPLOADING.value,
                    "upload_id": upload_id,
                    "part_size": part_size,
                    "part_count": part_count,
                },
            )
        except Exception:
            db.rollback()
            try:
                store.abort_multipart(key, upload_id)
            except StorageProviderError:
                logger.warning("Failed to abort multipart session %s for key=%s", upload_id, key, exc_info=True)
            raise
        logger.info(
            "Multipart upload initiated file=%s user=%s size=%s parts=%s key=%s",
            record.id, user.id, size, part_count, key,
        )
        return {
            "fileId": record.id,
            "storageKey": key,
            "useMultipart": True,
            "uploadId": upload_id,
            "partSize": part_size,
            "partCount": part_count,
            "parts": parts,
            "expiresIn": ttl,
            "quota": quota_ledger.snapshot(db, user),
        }

    # ------------------------------------------------------------------
    # 确认上传
    # ------------------------------------------------------------------
    def _discard(self, db: Session, record: FileRecord, store: ObjectStore) -> None:
        """删除对象与未完成记录；对象删除失败时保留记录交给清理任务。"""
        file_id, key = record.id, record.storage_key
        try:
            store.delete_object(key)
        except StorageProviderError:
            logger.warning("Could not delete object %s for file %s, leaving it to the sweeper", key, file_id)
            return
        db.delete(record)
        db.commit()

    def finalize_upload(
        self,
        db: Session,
        user: User,
        file_id: int,
        *,
        parts: Optional[Iterable[CompletedPart]] = None,
    ) -> dict[str, Any]:
        record = file_record_crud.get_owned(db, file_id, user.id)
        if record is None:
            raise NotFoundError("文件不存在")
        if record.is_completed:
            raise AlreadyFinalizedError(record.id)

        store = self.store
        key = record.storage_key
        if record.is_multipart:
            part_list = sorted(parts or [], key=lambda p: p.part_number)
            if not part_list:
                raise AppException("分片上传确认时必须提供分片列表", HTTP_STATUS_BAD_REQUEST)
            store.complete_multipart(key, record.upload_id, part_list)

        meta = store.head_object(key)
        if meta is None:
            raise ObjectMissingError(key)
        declared = record.size_bytes
        if meta.size != declared:
            logger.warning(
                "Size mismatch on finalize file=%s declared=%s actual=%s, deleting object", file_id, declared, meta.size
            )
            self._discard(db, record, store)
            raise SizeMismatchError(declared, meta.size)

        try:
            if not file_record_crud.mark_completed(db, record.id, etag=meta.etag, completed_at=utcnow()):
                raise AlreadyFinalizedError(record.id)
            quota_ledger.apply_completed_upload(
                db, user=user, size=meta.size, mime_type=record.mime_type, auto_commit=False
            )
            db.commit()
        except QuotaExceededError:
            db.rollback()
            logger.info("Finalize rejected by ledger for file=%s user=%s, deleting object", file_id, user.id)
            self._discard(db, record, store)
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(record)
        logger.info("Upload finalized file=%s user=%s size=%s", record.id, user.id, record.size_bytes)
        return {"file": serialize_file(record), "quota": quota_ledger.snapshot(db, user)}

    # ------------------------------------------------------------------
    # 取消 / 删除 / 未完成列表
    # ------------------------------------------------------------------
    def abort_upload(self, db: Session, user: User, file_id: int) -> None:
        record = file_record_crud.get_owned(db, file_id, user.id)
        if record is None:
            raise NotFoundError("文件不存在")
        if record.is_completed:
            raise AlreadyFinalizedError(record.id)
        store = self.store
        if record.is_multipart:
            store.abort_multipart(record.storage_key, record.upload_id)
        store.delete_object(record.storage_key)
        file_record_crud.hard_delete(db, record)
        logger.info("Upload aborted file=%s user=%s", file_id, user.id)

    def delete_file(self, db: Session, user: User, file_id: int) -> None:
        """软删除并释放容量；对象保留到清理任务的保留期结束。"""
        record = file_record_crud.get_owned(db, file_id, user.id)
        if record is None or not record.is_completed:
            raise NotFoundError("文件不存在")
        owner_id, company_id = record.uploaded_by, record.company_id
        size, mime_type = record.size_bytes, record.mime_type
        try:
            if not file_record_crud.mark_deleted(db, file_id, deleted_at=utcnow()):
                raise NotFoundError("文件不存在")
            quota_ledger.apply_deleted_file(
                db, user_id=owner_id, company_id=company_id, size=size, mime_type=mime_type, auto_commit=False
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("File soft-deleted file=%s user=%s size=%s", file_id, user.id, size)

    def list_pending(self, db: Session, user: User) -> list[dict[str, Any]]:
        return [serialize_file(record) for record in file_record_crud.list_open(db, user.id)]


upload_service = UploadService()
