"""本地对象存储的签名直链接口。

仅在 ``STORAGE_BACKEND=LOCAL`` 时可用，模拟 S3 预签名 PUT/GET 的行为：
令牌过期或用途不符时拒绝访问，写入成功后通过 ``ETag`` 响应头返回摘要。
"""

import io

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import FileResponse, Response
from starlette.concurrency import run_in_threadpool

from app.packages.drive.core.constants import (
    LOCAL_OBJECT_GET_PURPOSE,
    LOCAL_OBJECT_PART_PURPOSE,
    LOCAL_OBJECT_PUT_PURPOSE,
)
from app.packages.drive.core.exceptions import StorageProviderError
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import decode_and_verify_token
from app.packages.drive.services.object_store import LocalObjectStore, get_object_store

router = APIRouter(prefix="/local-objects", tags=["local-objects"])


def _local_store() -> LocalObjectStore:
    store = get_object_store()
    if not isinstance(store, LocalObjectStore):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="资源不存在")
    return store


def _claims(token: str, *purposes: str) -> dict:
    payload = decode_and_verify_token(token)
    if payload is None or payload.get("purpose") not in purposes or not payload.get("key"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="签名无效或已过期")
    return payload


@router.put("")
async def put_object(request: Request, token: str = Query(...)) -> Response:
    store = _local_store()
    claims = _claims(token, LOCAL_OBJECT_PUT_PURPOSE, LOCAL_OBJECT_PART_PURPOSE)
    body = io.BytesIO(await request.body())
    try:
        if claims["purpose"] == LOCAL_OBJECT_PART_PURPOSE:
            etag = await run_in_threadpool(store.put_part, claims["upload_id"], int(claims["part"]), body)
        else:
            etag = await run_in_threadpool(store.put_object, claims["key"], body, claims.get("ct"))
    except StorageProviderError as exc:
        logger.warning("Local object write rejected key=%s: %s", claims["key"], exc.msg)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="上传会话不存在") from exc
    return Response(status_code=status.HTTP_200_OK, headers={"ETag": f'"{etag}"'})


@router.get("")
def get_object(token: str = Query(...)) -> FileResponse:
    store = _local_store()
    claims = _claims(token, LOCAL_OBJECT_GET_PURPOSE)
    meta = store.head_object(claims["key"])
    if meta is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="对象不存在")
    headers = {"Content-Disposition": claims.get("disposition") or "attachment"}
    return FileResponse(
        store.object_path(claims["key"]),
        media_type=meta.content_type or "application/octet-stream",
        headers=headers,
    )
