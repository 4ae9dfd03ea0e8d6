"""异常处理模块：定义统一的业务异常、配额/上传领域异常以及全局响应转换。

所有领域异常都继承 ``AppException``，``data`` 字段承载可供客户端解析的结构化信息：

- ``QuotaExceededError``：一个或多个配额策略违规（``violations``），终态，不可重试；
- ``ObjectMissingError``：客户端声称已上传，但存储中不存在对象；
- ``SizeMismatchError``：存储中对象大小与声明大小不符；
- ``AlreadyFinalizedError``：文件已完成，不能再次确认；
- ``NotFoundError``：资源不存在或不属于当前用户；
- ``BelowAllocatedError``：公司总容量低于已分配给成员的容量；
- ``InsufficientAdminCapacityError``：管理员剩余可分配容量不足；
- ``PartUploadFailedError``：分片重试耗尽；
- ``StorageProviderError``：对象存储调用失败。
"""

from typing import Any, Iterable, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.packages.drive.core.logger import logger


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = status.HTTP_400_BAD_REQUEST, data=None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data

    @property
    def msg(self) -> str:
        return self.detail


class QuotaExceededError(AppException):
    def __init__(self, violations: Iterable[Any], msg: Optional[str] = None) -> None:
        self.violations = list(violations)
        items = [v.to_dict() if hasattr(v, "to_dict") else dict(v) for v in self.violations]
        if msg is None:
            msg = "；".join(item["message"] for item in items) or "超出配额限制"
        super().__init__(msg, status.HTTP_403_FORBIDDEN, {"violations": items})

    @property
    def reasons(self) -> list[str]:
        return [item["reason"] for item in self.data["violations"]]


class ObjectMissingError(AppException):
    def __init__(self, storage_key: str) -> None:
        self.storage_key = storage_key
        super().__init__("存储中未找到已上传的文件，请重新上传", status.HTTP_404_NOT_FOUND, {"storageKey": storage_key})


class SizeMismatchError(AppException):
    def __init__(self, declared: int, actual: int) -> None:
        self.declared = declared
        self.actual = actual
        super().__init__(
            f"文件大小不一致：声明 {declared} 字节，实际 {actual} 字节",
            status.HTTP_400_BAD_REQUEST,
            {"declared": declared, "actual": actual},
        )


class AlreadyFinalizedError(AppException):
    def __init__(self, file_id: int) -> None:
        self.file_id = file_id
        super().__init__("文件已完成上传确认", status.HTTP_409_CONFLICT, {"fileId": file_id})


class NotFoundError(AppException):
    def __init__(self, msg: str = "资源不存在") -> None:
        super().__init__(msg, status.HTTP_404_NOT_FOUND)


class BelowAllocatedError(AppException):
    def __init__(self, requested: int, allocated: int) -> None:
        self.shortfall = allocated - requested
        super().__init__(
            f"存储容量不能低于已分配给成员的 {allocated} 字节（差额 {self.shortfall} 字节）",
            status.HTTP_400_BAD_REQUEST,
            {"requested": requested, "allocatedToUsers": allocated, "shortfall": self.shortfall},
        )


class InsufficientAdminCapacityError(AppException):
    def __init__(self, available: int, requested: int) -> None:
        self.available = available
        self.requested = requested
        super().__init__(
            f"可分配容量不足：剩余 {available} 字节，申请 {requested} 字节",
            status.HTTP_400_BAD_REQUEST,
            {"available": available, "requested": requested},
        )


class PartUploadFailedError(AppException):
    def __init__(self, part_number: int, attempts: int, cause: Optional[str] = None) -> None:
        self.part_number = part_number
        self.attempts = attempts
        super().__init__(
            f"分片 {part_number} 上传失败（已尝试 {attempts} 次）",
            status.HTTP_502_BAD_GATEWAY,
            {"partNumber": part_number, "attempts": attempts, "cause": cause},
        )


class StorageProviderError(AppException):
    def __init__(self, operation: str, key: Optional[str] = None, cause: Optional[str] = None) -> None:
        self.operation = operation
        self.key = key
        super().__init__(
            f"对象存储操作失败：{operation}",
            status.HTTP_502_BAD_GATEWAY,
            {"operation": operation, "key": key, "cause": cause},
        )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)
