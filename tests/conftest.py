"""测试夹具：为 pytest 提供数据库、本地对象存储与客户端的共享配置。"""

import os
import tempfile
import uuid
from typing import Callable, Generator

_TMP_DIR = tempfile.mkdtemp(prefix="drive-tests-")
TEST_DB_PATH = os.path.join(_TMP_DIR, "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"

# 必须在导入应用之前设置，配置对象会被缓存
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["APP_ACTIVE_PACKAGE"] = "drive"
os.environ["STORAGE_BACKEND"] = "LOCAL"
os.environ["LOCAL_STORAGE_ROOT"] = os.path.join(_TMP_DIR, "objects")
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["LOG_DIR"] = os.path.join(_TMP_DIR, "log")
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["REDIS_HOST"] = "127.0.0.1"
os.environ["REDIS_PORT"] = "1"
os.environ["MULTIPART_PART_SIZE"] = "1024"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.main import app  # noqa: E402
from app.packages.drive.core.config import GIB  # noqa: E402
from app.packages.drive.core.dependencies import get_db  # noqa: E402
from app.packages.drive.db import session as db_session  # noqa: E402
from app.packages.drive.db.init_db import init_db  # noqa: E402
from app.packages.drive.models.base import Base  # noqa: E402
from app.packages.drive.services.object_store import LocalObjectStore, get_object_store  # noqa: E402

API = "/api/v1"
SUPERADMIN = ("superadmin", "superadmin123")


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    Base.metadata.create_all(bind=engine)
    init_db()
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(db_session_fixture):
    """构建 FastAPI TestClient，并注入测试专用的数据库依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def local_store() -> LocalObjectStore:
    store = get_object_store()
    assert isinstance(store, LocalObjectStore)
    return store


def unique(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def login(client: TestClient, username: str, password: str) -> dict:
    response = client.post(f"{API}/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


@pytest.fixture()
def superadmin_headers(client: TestClient) -> dict:
    return login(client, *SUPERADMIN)


@pytest.fixture()
def make_company(client: TestClient) -> Callable[..., dict]:
    """注册一家新公司，可选地调整总容量，返回管理员的身份信息。"""

    def _make(total_storage: int = 0) -> dict:
        username = unique("owner")
        password = "owner123"
        company_name = unique("company")
        response = client.post(
            f"{API}/auth/register",
            json={"username": username, "password": password, "companyName": company_name},
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        headers = login(client, username, password)
        if total_storage:
            su_headers = login(client, *SUPERADMIN)
            resp = client.post(
                f"{API}/storage/allocate-to-company",
                json={"companyId": data["company"]["id"], "storageBytes": total_storage},
                headers=su_headers,
            )
            assert resp.status_code == 200, resp.text
        return {
            "user_id": data["user_id"],
            "company_id": data["company"]["id"],
            "username": username,
            "password": password,
            "headers": headers,
        }

    return _make


@pytest.fixture()
def make_member(client: TestClient) -> Callable[..., dict]:
    """由管理员创建团队成员并分配容量。"""

    def _make(admin: dict, storage_allocated: int = 1 * GIB) -> dict:
        username = unique("member")
        password = "member123"
        response = client.post(
            f"{API}/companies/members",
            json={"username": username, "password": password, "storageAllocated": storage_allocated},
            headers=admin["headers"],
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        return {
            "user_id": data["user_id"],
            "company_id": data["company_id"],
            "username": username,
            "password": password,
            "headers": login(client, username, password),
        }

    return _make


def write_sparse_object(store: LocalObjectStore, key: str, size: int) -> None:
    """直接在存储中放置指定大小的对象，模拟客户端已完成直传。"""
    path = store.object_path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as fh:
        fh.truncate(size)
