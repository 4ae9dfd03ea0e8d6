"""对象存储适配层：统一封装 S3 兼容存储与本地文件系统的直传能力。

服务端只负责签发短期有效的直传/下载链接、管理分片会话以及核验对象元数据，
文件字节始终由客户端直接与存储交互（本地存储通过 ``/local-objects`` 接口模拟）。
"""

from __future__ import annotations

import hashlib
import json
import re
import secrets
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO, Iterable, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.packages.drive.core.config import Settings, get_settings
from app.packages.drive.core.constants import (
    LOCAL_OBJECT_GET_PURPOSE,
    LOCAL_OBJECT_PART_PURPOSE,
    LOCAL_OBJECT_PUT_PURPOSE,
)
from app.packages.drive.core.enums import StorageTypeEnum
from app.packages.drive.core.exceptions import StorageProviderError
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import create_temporary_token

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_CHUNK = 1024 * 1024


def sanitize_filename(name: str, *, max_length: int = 200) -> str:
    """只保留字母、数字、点与短横线，其余字符替换为下划线。"""
    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    safe = _UNSAFE_CHARS.sub("_", base).strip(".") or "file"
    return safe[-max_length:]


def _strip_etag(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip().strip('"')


def _content_disposition(filename: Optional[str], attachment: bool) -> str:
    kind = "attachment" if attachment else "inline"
    if not filename:
        return kind
    return f"{kind}; filename*=UTF-8''{quote(filename)}"


# ------------------------------------------
# 公共数据结构
# ------------------------------------------

@dataclass
class ObjectMetadata:
    size: int
    etag: Optional[str]
    content_type: Optional[str]
    last_modified: Optional[datetime]


@dataclass
class PresignedRequest:
    url: str
    method: str
    expires_in: int
    headers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"url": self.url, "method": self.method, "expiresIn": self.expires_in, "headers": self.headers}


@dataclass(frozen=True)
class CompletedPart:
    part_number: int
    etag: str


class ObjectStore:
    """对象存储接口。"""

    storage_type: str = ""

    def create_presigned_upload(self, key: str, content_type: str, ttl: int) -> PresignedRequest:
        raise NotImplementedError

    def create_presigned_download(
        self, key: str, ttl: int, *, attachment: bool = True, filename: Optional[str] = None
    ) -> PresignedRequest:
        raise NotImplementedError

    def initiate_multipart(self, key: str, content_type: str) -> str:
        raise NotImplementedError

    def create_presigned_part(self, key: str, upload_id: str, part_number: int, ttl: int) -> PresignedRequest:
        raise NotImplementedError

    def complete_multipart(self, key: str, upload_id: str, parts: Iterable[CompletedPart]) -> Optional[str]:
        raise NotImplementedError

    def abort_multipart(self, key: str, upload_id: str) -> None:
        raise NotImplementedError

    def head_object(self, key: str) -> Optional[ObjectMetadata]:
        """返回对象元数据，对象不存在时返回 ``None``。"""
        raise NotImplementedError

    def delete_object(self, key: str) -> None:
        """删除对象；对象不存在视为成功。"""
        raise NotImplementedError

    def make_unique_key(self, user_id: int, original_name: str, folder: str = "uploads") -> str:
        """生成 ``<folder>/user-<id>/<毫秒时间戳>-<随机串>-<安全文件名>`` 形式的唯一对象 key。"""
        timestamp = int(time.time() * 1000)
        suffix = secrets.token_hex(8)
        prefix = folder.strip("/") or "uploads"
        return f"{prefix}/user-{user_id}/{timestamp}-{suffix}-{sanitize_filename(original_name)}"


# ------------------------------------------
# S3 实现（boto3，兼容 Backblaze B2 / MinIO）
# ------------------------------------------


class S3ObjectStore(ObjectStore):
    storage_type = StorageTypeEnum.S3.value

    def __init__(
        self,
        *,
        bucket: str,
        region: str,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        max_attempts: int = 3,
        client=None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket must be configured")
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(signature_version="s3v4", retries={"max_attempts": max_attempts, "mode": "standard"}),
        )

    def _fail(self, operation: str, key: Optional[str], exc: Exception) -> StorageProviderError:
        logger.error("S3 %s failed for key=%s: %s", operation, key, exc)
        return StorageProviderError(operation, key, str(exc))

    def _presign(self, method: str, params: dict, ttl: int) -> str:
        try:
            return self._client.generate_presigned_url(method, Params=params, ExpiresIn=ttl)
        except (ClientError, BotoCoreError) as exc:
            raise self._fail(method, params.get("Key"), exc) from exc

    def create_presigned_upload(self, key: str, content_type: str, ttl: int) -> PresignedRequest:
        url = self._presign("put_object", {"Bucket": self.bucket, "Key": key, "ContentType": content_type}, ttl)
        return PresignedRequest(url=url, method="PUT", expires_in=ttl, headers={"Content-Type": content_type})

    def create_presigned_download(
        self, key: str, ttl: int, *, attachment: bool = True, filename: Optional[str] = None
    ) -> PresignedRequest:
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "ResponseContentDisposition": _content_disposition(filename, attachment),
        }
        return PresignedRequest(url=self._presign("get_object", params, ttl), method="GET", expires_in=ttl)

    def initiate_multipart(self, key: str, content_type: str) -> str:
        try:
            resp = self._client.create_multipart_upload(Bucket=self.bucket, Key=key, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("create_multipart_upload", key, exc) from exc
        return resp["UploadId"]

    def create_presigned_part(self, key: str, upload_id: str, part_number: int, ttl: int) -> PresignedRequest:
        params = {"Bucket": self.bucket, "Key": key, "UploadId": upload_id, "PartNumber": part_number}
        return PresignedRequest(url=self._presign("upload_part", params, ttl), method="PUT", expires_in=ttl)

    def complete_multipart(self, key: str, upload_id: str, parts: Iterable[CompletedPart]) -> Optional[str]:
        payload = [{"ETag": f'"{_strip_etag(p.etag)}"', "PartNumber": p.part_number} for p in parts]
        try:
            resp = self._client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": payload},
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("complete_multipart_upload", key, exc) from exc
        return _strip_etag(resp.get("ETag"))

    def abort_multipart(self, key: str, upload_id: str) -> None:
        try:
            self._client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "NoSuchUpload":
                return
            raise self._fail("abort_multipart_upload", key, exc) from exc
        except BotoCoreError as exc:
            raise self._fail("abort_multipart_upload", key, exc) from exc

    def head_object(self, key: str) -> Optional[ObjectMetadata]:
        try:
            resp = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if str(exc.response.get("Error", {}).get("Code")) in _NOT_FOUND_CODES:
                return None
            raise self._fail("head_object", key, exc) from exc
        except BotoCoreError as exc:
            raise self._fail("head_object", key, exc) from exc
        return ObjectMetadata(
            size=int(resp.get("ContentLength", 0)),
            etag=_strip_etag(resp.get("ETag")),
            content_type=resp.get("ContentType"),
            last_modified=resp.get("LastModified"),
        )

    def delete_object(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("delete_object", key, exc) from exc


# ------------------------------------------
# 本地实现（开发与测试）
# ------------------------------------------


class LocalObjectStore(ObjectStore):
    """文件系统对象存储，"预签名"链接为指向 ``/local-objects`` 的短期令牌。"""

    storage_type = StorageTypeEnum.LOCAL.value

    def __init__(self, *, root: Path, url_prefix: str) -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        (self.root / "objects").mkdir(parents=True, exist_ok=True)
        (self.root / "meta").mkdir(parents=True, exist_ok=True)
        (self.root / "multipart").mkdir(parents=True, exist_ok=True)

    # ---- 路径 ----
    def _safe_join(self, base: str, rel: str) -> Path:
        base_dir = (self.root / base).resolve()
        target = (base_dir / rel.lstrip("/")).resolve()
        if base_dir != target and base_dir not in target.parents:
            raise StorageProviderError("resolve_key", rel, "key escapes storage root")
        return target

    def object_path(self, key: str) -> Path:
        return self._safe_join("objects", key)

    def _meta_path(self, key: str) -> Path:
        return self._safe_join("meta", f"{key}.json")

    def _upload_dir(self, upload_id: str) -> Path:
        if not re.fullmatch(r"[0-9a-f]{32}", upload_id or ""):
            raise StorageProviderError("resolve_upload", None, f"invalid upload id {upload_id!r}")
        return self.root / "multipart" / upload_id

    def _signed_url(self, claims: dict, ttl: int) -> str:
        token = create_temporary_token(claims, expires_seconds=ttl)
        return f"{self.url_prefix}/local-objects?token={token}"

    # ---- 直传链接 ----
    def create_presigned_upload(self, key: str, content_type: str, ttl: int) -> PresignedRequest:
        url = self._signed_url({"purpose": LOCAL_OBJECT_PUT_PURPOSE, "key": key, "ct": content_type}, ttl)
        return PresignedRequest(url=url, method="PUT", expires_in=ttl, headers={"Content-Type": content_type})

    def create_presigned_download(
        self, key: str, ttl: int, *, attachment: bool = True, filename: Optional[str] = None
    ) -> PresignedRequest:
        claims = {
            "purpose": LOCAL_OBJECT_GET_PURPOSE,
            "key": key,
            "disposition": _content_disposition(filename, attachment),
        }
        return PresignedRequest(url=self._signed_url(claims, ttl), method="GET", expires_in=ttl)

    def create_presigned_part(self, key: str, upload_id: str, part_number: int, ttl: int) -> PresignedRequest:
        claims = {"purpose": LOCAL_OBJECT_PART_PURPOSE, "key": key, "upload_id": upload_id, "part": part_number}
        return PresignedRequest(url=self._signed_url(claims, ttl), method="PUT", expires_in=ttl)

    # ---- 写入（由 /local-objects 接口调用）----
    @staticmethod
    def _write_stream(target: Path, stream: BinaryIO) -> str:
        target.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.md5()
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        with tmp.open("wb") as fh:
            while True:
                chunk = stream.read(_CHUNK)
                if not chunk:
                    break
                digest.update(chunk)
                fh.write(chunk)
        tmp.replace(target)
        return digest.hexdigest()

    def _write_meta(self, key: str, *, etag: str, content_type: Optional[str]) -> None:
        meta_path = self._meta_path(key)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps({"etag": etag, "content_type": content_type}), encoding="utf-8")

    def put_object(self, key: str, stream: BinaryIO, content_type: Optional[str]) -> str:
        etag = self._write_stream(self.object_path(key), stream)
        self._write_meta(key, etag=etag, content_type=content_type)
        return etag

    def put_part(self, upload_id: str, part_number: int, stream: BinaryIO) -> str:
        upload_dir = self._upload_dir(upload_id)
        if not (upload_dir / "session.json").exists():
            raise StorageProviderError("upload_part", None, "NoSuchUpload")
        return self._write_stream(upload_dir / f"{part_number:05d}.part", stream)

    # ---- 分片会话 ----
    def initiate_multipart(self, key: str, content_type: str) -> str:
        upload_id = uuid.uuid4().hex
        upload_dir = self._upload_dir(upload_id)
        upload_dir.mkdir(parents=True, exist_ok=True)
        (upload_dir / "session.json").write_text(
            json.dumps({"key": key, "content_type": content_type}), encoding="utf-8"
        )
        return upload_id

    def complete_multipart(self, key: str, upload_id: str, parts: Iterable[CompletedPart]) -> Optional[str]:
        upload_dir = self._upload_dir(upload_id)
        session_file = upload_dir / "session.json"
        if not session_file.exists():
            raise StorageProviderError("complete_multipart_upload", key, "NoSuchUpload")
        session = json.loads(session_file.read_text(encoding="utf-8"))
        if session.get("key") != key:
            raise StorageProviderError("complete_multipart_upload", key, "upload id does not belong to key")

        ordered = list(parts)
        numbers = [p.part_number for p in ordered]
        if not ordered or numbers != sorted(set(numbers)):
            raise StorageProviderError("complete_multipart_upload", key, "InvalidPartOrder")

        digests = []
        for part in ordered:
            part_file = upload_dir / f"{part.part_number:05d}.part"
            if not part_file.exists():
                raise StorageProviderError("complete_multipart_upload", key, f"InvalidPart {part.part_number}")
            digest = hashlib.md5()
            with part_file.open("rb") as fh:
                for chunk in iter(lambda: fh.read(_CHUNK), b""):
                    digest.update(chunk)
            if digest.hexdigest() != _strip_etag(part.etag):
                raise StorageProviderError("complete_multipart_upload", key, f"InvalidPart {part.part_number}")
            digests.append(digest.digest())

        target = self.object_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as out:
            for part in ordered:
                with (upload_dir / f"{part.part_number:05d}.part").open("rb") as fh:
                    shutil.copyfileobj(fh, out, _CHUNK)
        etag = f"{hashlib.md5(b''.join(digests)).hexdigest()}-{len(digests)}"
        self._write_meta(key, etag=etag, content_type=session.get("content_type"))
        shutil.rmtree(upload_dir, ignore_errors=True)
        return etag

    def abort_multipart(self, key: str, upload_id: str) -> None:
        shutil.rmtree(self._upload_dir(upload_id), ignore_errors=True)

    # ---- 元数据与删除 ----
    def head_object(self, key: str) -> Optional[ObjectMetadata]:
        path = self.object_path(key)
        if not path.is_file():
            return None
        stat = path.stat()
        meta: dict = {}
        meta_path = self._meta_path(key)
        if meta_path.exists():
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        return ObjectMetadata(
            size=stat.st_size,
            etag=meta.get("etag"),
            content_type=meta.get("content_type"),
            last_modified=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
        )

    def delete_object(self, key: str) -> None:
        try:
            self.object_path(key).unlink(missing_ok=True)
            self._meta_path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageProviderError("delete_object", key, str(exc)) from exc


def build_object_store(settings: Settings) -> ObjectStore:
    """根据 ``STORAGE_BACKEND`` 构造对象存储实现。"""
    backend = (settings.storage_backend or "").upper()
    if backend == StorageTypeEnum.LOCAL.value:
        return LocalObjectStore(
            root=settings.local_storage_directory,
            url_prefix=f"{settings.public_base_url.rstrip('/')}{settings.api_v1_str}",
        )
    if backend == StorageTypeEnum.S3.value:
        return S3ObjectStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            endpoint_url=settings.s3_endpoint_url,
            max_attempts=settings.s3_max_attempts,
        )
    raise ValueError(f"Unsupported STORAGE_BACKEND: {settings.storage_backend}")


@lru_cache
def get_object_store() -> ObjectStore:
    store = build_object_store(get_settings())
    logger.info("Object store initialized: %s", store.storage_type)
    return store
