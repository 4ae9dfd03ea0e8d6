"""两阶段直传协议的集成测试：申请上传 -> 客户端直传 -> 确认记账。"""

from fastapi.testclient import TestClient

from app.packages.drive.core.config import GIB, MIB
from app.packages.drive.core.exceptions import QuotaExceededError
from app.packages.drive.crud.file_record import file_record_crud
from app.packages.drive.crud.users import user_crud
from app.packages.drive.db import session as db_session
from app.packages.drive.models.usage import DailyUsage
from app.packages.drive.services.upload_service import upload_service
from conftest import API, write_sparse_object


def _init(client: TestClient, headers: dict, size: int, **extra) -> dict:
    body = {"filename": extra.pop("filename", "report.pdf"), "size": size, "mimeType": "application/pdf", **extra}
    response = client.post(f"{API}/uploads/init", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _storage(client: TestClient, user: dict) -> dict:
    response = client.get(f"{API}/storage/users/{user['user_id']}", headers=user["headers"])
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _put(client: TestClient, init: dict, content: bytes) -> None:
    response = client.put(init["uploadUrl"], content=content, headers=init["headers"])
    assert response.status_code == 200, response.text
    assert response.headers["ETag"]


def test_round_trip_increments_usage_exactly_once(client: TestClient, make_company, local_store):
    """初始化后直传并确认：文件变为 completed，重复确认返回 409 且不重复计数。"""
    admin = make_company()
    init = _init(client, admin["headers"], 1000)
    assert init["useMultipart"] is False
    assert init["method"] == "PUT"
    assert init["storageKey"].startswith(f"uploads/company-{admin['company_id']}/user-{admin['user_id']}/")

    _put(client, init, b"a" * 1000)
    response = client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=admin["headers"])
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["file"]["uploadStatus"] == "completed"
    assert data["file"]["size"] == 1000
    assert data["quota"]["storage"]["used"] == 1000
    assert data["quota"]["files"]["count"] == 1
    assert data["quota"]["byType"]["pdfs"] == {"count": 1, "size": 1000}

    again = client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=admin["headers"])
    assert again.status_code == 409
    assert again.json()["code"] == 409
    assert _storage(client, admin)["storage_used"] == 1000

    company = client.get(f"{API}/companies/me", headers=admin["headers"]).json()["data"]
    assert company["used_storage"] == 1000


def test_scenario_fresh_user_uploads_100mib(client: TestClient, make_company, local_store):
    admin = make_company()
    init = _init(client, admin["headers"], 100 * MIB, useMultipart=False)
    write_sparse_object(local_store, init["storageKey"], 100 * MIB)

    response = client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=admin["headers"])
    assert response.status_code == 200, response.text
    storage = response.json()["data"]["quota"]["storage"]
    assert storage["used"] == 100 * MIB
    assert storage["total"] == 5 * GIB
    assert storage["available"] == 5 * GIB - 100 * MIB
    assert round(storage["available"] / GIB, 3) == 4.902


def test_init_returns_current_quota_snapshot(client: TestClient, make_company):
    """申请阶段不预留容量，返回的快照反映申请前的账本。"""
    admin = make_company()
    simple = _init(client, admin["headers"], 10)
    assert simple["useMultipart"] is False
    assert simple["quota"]["storage"]["used"] == 0
    assert simple["quota"]["storage"]["available"] == 5 * GIB
    assert simple["quota"]["files"]["count"] == 0

    multipart = _init(client, admin["headers"], 2500, filename="clip.pdf", useMultipart=True)
    assert multipart["useMultipart"] is True
    assert multipart["quota"]["storage"]["available"] == 5 * GIB
    assert multipart["quota"]["daily"]["used"] == 0


def test_init_rejects_one_byte_over_max_file_size(client: TestClient, make_company):
    admin = make_company()
    response = client.post(
        f"{API}/uploads/init",
        json={"filename": "big.pdf", "size": 100 * MIB + 1, "mimeType": "application/pdf"},
        headers=admin["headers"],
    )
    assert response.status_code == 403
    violations = response.json()["data"]["violations"]
    assert [v["reason"] for v in violations] == ["fileSize"]
    assert violations[0]["remaining"] == 100 * MIB


def test_check_quota_does_not_create_records(client: TestClient, make_company):
    admin = make_company()
    response = client.post(
        f"{API}/uploads/check-quota",
        json={"size": 10, "mimeType": "application/x-msdownload"},
        headers=admin["headers"],
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["allowed"] is False
    assert data["reasons"] == ["fileType"]
    pending = client.get(f"{API}/uploads/pending", headers=admin["headers"]).json()["data"]
    assert pending == []


def test_size_mismatch_deletes_object_and_leaves_ledger_unchanged(client: TestClient, make_company, local_store):
    admin = make_company()
    init = _init(client, admin["headers"], 1000)
    _put(client, init, b"b" * 2000)

    response = client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=admin["headers"])
    assert response.status_code == 400
    assert response.json()["data"] == {"declared": 1000, "actual": 2000}
    assert local_store.head_object(init["storageKey"]) is None
    assert _storage(client, admin)["storage_used"] == 0

    missing = client.get(f"{API}/files/{init['fileId']}", headers=admin["headers"])
    assert missing.status_code == 404


def test_finalize_without_object_reports_missing(client: TestClient, make_company):
    admin = make_company()
    init = _init(client, admin["headers"], 1000)

    response = client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=admin["headers"])
    assert response.status_code == 404
    assert response.json()["data"]["storageKey"] == init["storageKey"]

    pending = client.get(f"{API}/uploads/pending", headers=admin["headers"]).json()["data"]
    assert [item["id"] for item in pending] == [init["fileId"]]
    assert pending[0]["uploadStatus"] == "pending"


def test_other_users_cannot_finalize(client: TestClient, make_company):
    owner = make_company()
    stranger = make_company()
    init = _init(client, owner["headers"], 10)
    response = client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=stranger["headers"])
    assert response.status_code == 404


def test_multipart_upload_through_local_store(client: TestClient, make_company, local_store):
    admin = make_company()
    payload = bytes(range(256)) * 10
    init = _init(client, admin["headers"], len(payload), useMultipart=True)
    assert init["useMultipart"] is True
    assert init["partSize"] == 1024
    assert init["partCount"] == 3
    assert [p["partNumber"] for p in init["parts"]] == [1, 2, 3]

    parts = []
    for part in init["parts"]:
        start = (part["partNumber"] - 1) * init["partSize"]
        response = client.put(part["url"], content=payload[start:start + init["partSize"]])
        assert response.status_code == 200, response.text
        parts.append({"partNumber": part["partNumber"], "etag": response.headers["ETag"]})

    no_parts = client.post(f"{API}/uploads/{init['fileId']}/finalize", json={}, headers=admin["headers"])
    assert no_parts.status_code == 400

    response = client.post(
        f"{API}/uploads/{init['fileId']}/finalize", json={"parts": parts}, headers=admin["headers"]
    )
    assert response.status_code == 200, response.text
    file_data = response.json()["data"]["file"]
    assert file_data["multipart"] is True
    assert file_data["etag"].endswith("-3")
    assert local_store.object_path(init["storageKey"]).read_bytes() == payload


def test_abort_multipart_upload(client: TestClient, make_company):
    admin = make_company()
    init = _init(client, admin["headers"], 3000, useMultipart=True)

    response = client.post(f"{API}/uploads/{init['fileId']}/abort", headers=admin["headers"])
    assert response.status_code == 200
    assert client.get(f"{API}/uploads/pending", headers=admin["headers"]).json()["data"] == []

    part_url = init["parts"][0]["url"]
    rejected = client.put(part_url, content=b"late part")
    assert rejected.status_code == 404

    again = client.post(f"{API}/uploads/{init['fileId']}/abort", headers=admin["headers"])
    assert again.status_code == 404


def test_delete_releases_capacity_once(client: TestClient, make_company):
    admin = make_company()
    init = _init(client, admin["headers"], 500)
    _put(client, init, b"c" * 500)
    client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=admin["headers"])
    assert _storage(client, admin)["storage_used"] == 500

    response = client.delete(f"{API}/files/{init['fileId']}", headers=admin["headers"])
    assert response.status_code == 200
    assert _storage(client, admin)["storage_used"] == 0

    again = client.delete(f"{API}/files/{init['fileId']}", headers=admin["headers"])
    assert again.status_code == 404
    assert _storage(client, admin)["storage_used"] == 0

    quota = client.get(f"{API}/quota", headers=admin["headers"]).json()["data"]
    assert quota["files"]["count"] == 0
    assert quota["byType"]["pdfs"] == {"count": 0, "size": 0}
    company = client.get(f"{API}/companies/me", headers=admin["headers"]).json()["data"]
    assert company["used_storage"] == 0


def test_file_listing_and_links(client: TestClient, make_company, db_session_fixture):
    admin = make_company()
    init = _init(client, admin["headers"], 11, filename="hello world.pdf")
    _put(client, init, b"hello world")
    client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=admin["headers"])

    listing = client.get(f"{API}/files", params={"page": 1, "pageSize": 10}, headers=admin["headers"]).json()["data"]
    assert listing["total"] == 1
    assert listing["items"][0]["originalName"] == "hello world.pdf"
    assert listing["items"][0]["filename"] == "hello_world.pdf"

    link = client.get(f"{API}/files/{init['fileId']}/download-url", headers=admin["headers"]).json()["data"]
    assert link["fileName"] == "hello world.pdf"
    download = client.get(link["url"])
    assert download.status_code == 200
    assert download.content == b"hello world"
    assert download.headers["content-disposition"].startswith("attachment")

    view = client.get(f"{API}/files/{init['fileId']}/view-url", headers=admin["headers"]).json()["data"]
    assert view["mimeType"] == "application/pdf"
    assert client.get(view["url"]).headers["content-disposition"].startswith("inline")

    usage = db_session_fixture.query(DailyUsage).filter(DailyUsage.user_id == admin["user_id"]).one()
    assert usage.download_count == 1
    assert usage.download_size == 11
    assert usage.upload_count == 1


def test_tampered_local_token_is_rejected(client: TestClient, make_company):
    admin = make_company()
    init = _init(client, admin["headers"], 5)
    response = client.put(init["uploadUrl"] + "x", content=b"12345")
    assert response.status_code == 403


def test_concurrent_finalize_cannot_exceed_allocation(client: TestClient, make_company, make_member, local_store):
    """两个上传单独都能放下、合计超出分配额度时，只有一个能确认成功。"""
    admin = make_company()
    member = make_member(admin, storage_allocated=1500)
    first = _init(client, member["headers"], 1000)
    second = _init(client, member["headers"], 1000)
    _put(client, first, b"1" * 1000)
    _put(client, second, b"2" * 1000)

    session_a = db_session.SessionLocal()
    session_b = db_session.SessionLocal()
    try:
        # 两个会话都在任一确认之前读取了用户，模拟并发请求各自持有的旧状态
        user_a = user_crud.get(session_a, member["user_id"])
        user_b = user_crud.get(session_b, member["user_id"])
        assert user_a.storage_used == user_b.storage_used == 0

        upload_service.finalize_upload(session_a, user_a, first["fileId"])
        try:
            upload_service.finalize_upload(session_b, user_b, second["fileId"])
        except QuotaExceededError as exc:
            assert exc.reasons == ["allocation"]
            assert exc.data["violations"][0]["remaining"] == 500
        else:
            raise AssertionError("second finalize should have been rejected")
    finally:
        session_a.close()
        session_b.close()

    storage = _storage(client, member)
    assert storage["storage_used"] == 1000
    assert storage["storage_used"] <= storage["storage_allocated"]
    assert local_store.head_object(second["storageKey"]) is None
    with db_session.SessionLocal() as db:
        assert file_record_crud.get(db, second["fileId"]) is None
        assert file_record_crud.get(db, first["fileId"]).upload_status == "completed"
