"""API v1 汇总路由：统一挂载所有版本化的子路由。"""

from fastapi import APIRouter

from app.packages.drive.api.v1.endpoints import (
    auth,
    companies,
    files,
    local_objects,
    maintenance,
    quota,
    storage,
    uploads,
)

api_router = APIRouter()
api_router.include_router(auth.router)
api_router.include_router(uploads.router)
api_router.include_router(files.router)
api_router.include_router(quota.router)
api_router.include_router(companies.router)
api_router.include_router(storage.router)
api_router.include_router(maintenance.router)
api_router.include_router(local_objects.router)
