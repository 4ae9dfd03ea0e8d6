"""直传客户端：按两阶段协议上传文件，分片上传支持重试、取消与进度回调。

分片失败按指数退避重试（``base * 2**attempt``，封顶 ``max_delay``），重试耗尽时
调用服务端取消接口并抛出 ``PartUploadFailedError``；取消同样会通知服务端中止分片会话。
"""

from __future__ import annotations

import io
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Union

import httpx

from app.packages.drive.core.exceptions import AppException, PartUploadFailedError
from app.packages.drive.core.logger import get_logger

logger = get_logger("client")


def backoff_delay(attempt: int, *, base: float = 2.0, max_delay: float = 60.0) -> float:
    """第 ``attempt`` 次重试（从 0 开始）前的等待秒数。"""
    return min(max_delay, base * (2 ** max(attempt, 0)))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 60.0

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, base=self.base_delay, max_delay=self.max_delay)


class UploadCancelled(Exception):
    """上传被调用方取消。"""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UploadCancelled()

    def wait(self, seconds: float) -> bool:
        """可被取消打断的等待，返回是否已取消。"""
        return self._event.wait(seconds)


@dataclass(frozen=True)
class UploadProgress:
    file_id: int
    uploaded_bytes: int
    total_bytes: int
    completed_parts: int
    total_parts: int

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 100.0
        return round(self.uploaded_bytes / self.total_bytes * 100, 2)


ProgressListener = Callable[[UploadProgress], None]
Source = Union[bytes, str, Path, BinaryIO]

# 不可定位的流超过该大小时落盘
SPOOL_MAX_BYTES = 8 * 1024 * 1024


class SourceReader:
    """按字节范围读取上传内容，分片上传时每次只读入一个分片。"""

    def __init__(self, handle: BinaryIO, offset: int, size: int) -> None:
        self.handle = handle
        self.offset = offset
        self.size = size

    def read_range(self, start: int, length: int) -> bytes:
        self.handle.seek(self.offset + start)
        return self.handle.read(length)


class DirectUploadClient:
    """面向本服务 API 的上传客户端。``http`` 可以是任意 ``httpx.Client``。"""

    def __init__(
        self,
        http: httpx.Client,
        access_token: str,
        *,
        api_prefix: str = "/api/v1",
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.http = http
        self.api_prefix = api_prefix.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self._auth = {"Authorization": f"Bearer {access_token}"}

    # ---- API 调用 ----
    def _api(self, method: str, path: str, **kwargs) -> dict:
        response = self.http.request(method, f"{self.api_prefix}{path}", headers=self._auth, **kwargs)
        payload = response.json()
        if response.status_code >= 400:
            raise AppException(payload.get("msg") or "请求失败", response.status_code, payload.get("data"))
        return payload.get("data") or {}

    def init_upload(self, filename: str, size: int, mime_type: str, *, use_multipart: Optional[bool] = None) -> dict:
        body = {"filename": filename, "size": size, "mimeType": mime_type}
        if use_multipart is not None:
            body["useMultipart"] = use_multipart
        return self._api("POST", "/uploads/init", json=body)

    def finalize(self, file_id: int, parts: Optional[list[dict]] = None) -> dict:
        body = {"parts": parts} if parts is not None else {}
        return self._api("POST", f"/uploads/{file_id}/finalize", json=body)

    def abort(self, file_id: int) -> None:
        try:
            self._api("POST", f"/uploads/{file_id}/abort")
        except (AppException, httpx.HTTPError) as exc:
            logger.warning("Failed to abort upload %s: %s", file_id, exc)

    # ---- 上传 ----
    def upload(
        self,
        source: Source,
        *,
        filename: str,
        mime_type: str,
        use_multipart: Optional[bool] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressListener] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> dict:
        with _open_source(source) as reader:
            init = self.init_upload(filename, reader.size, mime_type, use_multipart=use_multipart)
            if init.get("useMultipart"):
                task = MultipartUploadTask(
                    self,
                    init,
                    reader,
                    cancel_token=cancel_token,
                    on_progress=on_progress,
                    sleep=sleep,
                )
                return task.run()

            file_id = init["fileId"]
            content = reader.read_range(0, reader.size)
            response = self.http.request(init.get("method", "PUT"), init["uploadUrl"], content=content, headers=init.get("headers"))
            if response.status_code >= 400:
                self.abort(file_id)
                raise PartUploadFailedError(1, 1, f"HTTP {response.status_code}")
            if on_progress:
                on_progress(UploadProgress(file_id, reader.size, reader.size, 1, 1))
            return self.finalize(file_id)


class MultipartUploadTask:
    """依次上传分片；每个分片独立重试，失败或取消时中止服务端会话。"""

    def __init__(
        self,
        client: DirectUploadClient,
        init: dict,
        reader: SourceReader,
        *,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressListener] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.client = client
        self.file_id: int = init["fileId"]
        self.part_size: int = init["partSize"]
        self.parts: list[dict] = sorted(init["parts"], key=lambda p: p["partNumber"])
        self.reader = reader
        self.cancel_token = cancel_token or CancellationToken()
        self.listeners: list[ProgressListener] = [on_progress] if on_progress else []
        self._sleep = sleep
        self.completed: list[dict] = []
        self.uploaded_bytes = 0

    def add_listener(self, listener: ProgressListener) -> None:
        self.listeners.append(listener)

    def _notify(self) -> None:
        progress = UploadProgress(
            self.file_id, self.uploaded_bytes, self.reader.size, len(self.completed), len(self.parts)
        )
        for listener in self.listeners:
            listener(progress)

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
            self.cancel_token.raise_if_cancelled()
        elif self.cancel_token.wait(seconds):
            raise UploadCancelled()

    def _part_length(self, part_number: int) -> int:
        start = (part_number - 1) * self.part_size
        return max(0, min(self.part_size, self.reader.size - start))

    def _chunk(self, part_number: int) -> bytes:
        return self.reader.read_range((part_number - 1) * self.part_size, self._part_length(part_number))

    def _upload_part(self, part: dict) -> str:
        policy = self.client.retry_policy
        number = part["partNumber"]
        # 每个分片单独读取，重试时复用同一块内容
        chunk = self._chunk(number)
        last_error = None
        for attempt in range(policy.max_attempts):
            self.cancel_token.raise_if_cancelled()
            try:
                response = self.client.http.request(part.get("method", "PUT"), part["url"], content=chunk)
                if response.status_code < 400:
                    etag = (response.headers.get("ETag") or "").strip('"')
                    if etag:
                        return etag
                    last_error = "missing ETag"
                else:
                    last_error = f"HTTP {response.status_code}"
            except httpx.TransportError as exc:
                last_error = str(exc)
            if attempt + 1 < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.info("Part %s of file %s failed (%s), retrying in %.1fs", number, self.file_id, last_error, delay)
                self._wait(delay)
        raise PartUploadFailedError(number, policy.max_attempts, last_error)

    def run(self) -> dict:
        try:
            for part in self.parts:
                etag = self._upload_part(part)
                self.completed.append({"partNumber": part["partNumber"], "etag": etag})
                self.uploaded_bytes += self._part_length(part["partNumber"])
                self._notify()
        except (PartUploadFailedError, UploadCancelled):
            logger.warning("Multipart upload of file %s stopped, aborting", self.file_id)
            self.client.abort(self.file_id)
            raise
        return self.client.finalize(self.file_id, self.completed)


@contextmanager
def _open_source(source: Source) -> Iterator[SourceReader]:
    """把各种来源统一为可按范围读取的句柄；不可定位的流先落到临时文件。"""
    if isinstance(source, bytes):
        yield SourceReader(io.BytesIO(source), 0, len(source))
    elif isinstance(source, (str, Path)):
        path = Path(source)
        with path.open("rb") as handle:
            yield SourceReader(handle, 0, os.fstat(handle.fileno()).st_size)
    elif hasattr(source, "read"):
        if hasattr(source, "seekable") and source.seekable():
            start = source.tell()
            end = source.seek(0, io.SEEK_END)
            source.seek(start)
            yield SourceReader(source, start, end - start)
        else:
            with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES) as spool:
                shutil.copyfileobj(source, spool)
                yield SourceReader(spool, 0, spool.tell())
    else:
        raise TypeError(f"Unsupported upload source: {type(source)!r}")
