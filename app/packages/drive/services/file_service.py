"""文件查询服务：列表、元数据与短期下载/预览链接。"""

from __future__ import annotations

from typing import Any, Callable

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.exceptions import NotFoundError
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.file_record import file_record_crud
from app.packages.drive.models.file_record import FileRecord
from app.packages.drive.models.user import User
from app.packages.drive.services.object_store import ObjectStore, get_object_store
from app.packages.drive.services.quota_ledger import quota_ledger
from app.packages.drive.services.upload_service import serialize_file


class FileService:
    def __init__(self, store_provider: Callable[[], ObjectStore] = get_object_store) -> None:
        self._store_provider = store_provider

    def _get_completed(self, db: Session, user: User, file_id: int) -> FileRecord:
        record = file_record_crud.get_owned(db, file_id, user.id)
        if record is None or not record.is_completed:
            raise NotFoundError("文件不存在")
        return record

    def list_files(self, db: Session, user: User, *, page: int = 1, page_size: int = 50) -> dict[str, Any]:
        total, items = file_record_crud.list_completed(db, user.id, skip=(page - 1) * page_size, limit=page_size)
        return {
            "total": total,
            "page": page,
            "pageSize": page_size,
            "items": [serialize_file(item) for item in items],
        }

    def get_metadata(self, db: Session, user: User, file_id: int) -> dict[str, Any]:
        return serialize_file(self._get_completed(db, user, file_id))

    def download_url(self, db: Session, user: User, file_id: int) -> dict[str, Any]:
        """签发附件下载链接，并计入当日下载统计。"""
        record = self._get_completed(db, user, file_id)
        ttl = get_settings().download_url_ttl_seconds
        presigned = self._store_provider().create_presigned_download(
            record.storage_key, ttl, attachment=True, filename=record.original_name
        )
        quota_ledger.record_download(db, user_id=user.id, size=record.size_bytes)
        logger.info("Download URL issued file=%s user=%s", record.id, user.id)
        return {"url": presigned.url, "expiresIn": presigned.expires_in, "fileName": record.original_name}

    def view_url(self, db: Session, user: User, file_id: int) -> dict[str, Any]:
        record = self._get_completed(db, user, file_id)
        ttl = get_settings().view_url_ttl_seconds
        presigned = self._store_provider().create_presigned_download(
            record.storage_key, ttl, attachment=False, filename=record.original_name
        )
        return {"url": presigned.url, "expiresIn": presigned.expires_in, "mimeType": record.mime_type}


file_service = FileService()
