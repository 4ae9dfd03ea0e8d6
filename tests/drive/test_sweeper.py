"""对账清理任务测试：过期未完成上传、已删除文件清除与互斥执行。"""

from datetime import date, timedelta

from fastapi.testclient import TestClient

from app.packages.drive.core.timezone import utcnow
from app.packages.drive.crud.file_record import file_record_crud
from app.packages.drive.models.file_record import FileRecord
from app.packages.drive.models.usage import DailyUsage
from app.packages.drive.services.sweeper import ReconciliationSweeper, sweeper
from conftest import API, write_sparse_object


def _pending_record(db, store, owner: dict, *, age: timedelta, status: str = "pending", with_object: bool = True):
    key = store.make_unique_key(owner["user_id"], "stale.bin", f"uploads/company-{owner['company_id']}")
    upload_id = None
    if status == "uploading":
        upload_id = store.initiate_multipart(key, "application/octet-stream")
    record = file_record_crud.create(
        db,
        {
            "original_name": "stale.bin",
            "filename": "stale.bin",
            "size_bytes": 64,
            "mime_type": "application/octet-stream",
            "storage_type": store.storage_type,
            "storage_key": key,
            "upload_id": upload_id,
            "part_size": 1024 if upload_id else None,
            "part_count": 1 if upload_id else None,
            "upload_status": status,
            "upload_initiated_at": utcnow() - age,
            "uploaded_by": owner["user_id"],
            "company_id": owner["company_id"],
        },
    )
    if with_object:
        write_sparse_object(store, key, 64)
    return record.id, key, upload_id


def test_stale_pending_upload_is_removed(make_company, local_store, db_session_fixture):
    """挂起 25 小时（阈值 24 小时）的 pending 记录及已存在的对象都会被清理。"""
    owner = make_company()
    stale_id, stale_key, _ = _pending_record(db_session_fixture, local_store, owner, age=timedelta(hours=25))
    fresh_id, fresh_key, _ = _pending_record(db_session_fixture, local_store, owner, age=timedelta(hours=23))

    report = sweeper.run_once()

    assert report.skipped is False
    assert report.stale_removed >= 1
    db_session_fixture.expire_all()
    assert file_record_crud.get(db_session_fixture, stale_id, include_deleted=True) is None
    assert local_store.head_object(stale_key) is None
    assert file_record_crud.get(db_session_fixture, fresh_id) is not None
    assert local_store.head_object(fresh_key) is not None


def test_stale_multipart_session_is_aborted(make_company, local_store, db_session_fixture):
    owner = make_company()
    file_id, key, upload_id = _pending_record(
        db_session_fixture, local_store, owner, age=timedelta(hours=30), status="uploading", with_object=False
    )
    assert (local_store.root / "multipart" / upload_id).exists()

    sweeper.run_once()

    db_session_fixture.expire_all()
    assert file_record_crud.get(db_session_fixture, file_id, include_deleted=True) is None
    assert not (local_store.root / "multipart" / upload_id).exists()


def test_purge_is_idempotent(client: TestClient, make_company, local_store, db_session_fixture):
    owner = make_company()
    init = client.post(
        f"{API}/uploads/init",
        json={"filename": "old.txt", "size": 4, "mimeType": "text/plain"},
        headers=owner["headers"],
    ).json()["data"]
    client.put(init["uploadUrl"], content=b"data", headers=init["headers"])
    client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=owner["headers"])
    client.delete(f"{API}/files/{init['fileId']}", headers=owner["headers"])

    db = db_session_fixture
    db.query(FileRecord).filter(FileRecord.id == init["fileId"]).update(
        {"deleted_at": utcnow() - timedelta(days=8)}, synchronize_session=False
    )
    db.commit()

    first = sweeper.run_once()
    assert first.purged >= 1
    assert first.failures == 0
    assert local_store.head_object(init["storageKey"]) is None
    db.expire_all()
    assert file_record_crud.get(db, init["fileId"], include_deleted=True) is None

    second = sweeper.run_once()
    assert second.purged == 0
    assert second.failures == 0


def test_recently_deleted_file_is_kept(client: TestClient, make_company, local_store, db_session_fixture):
    owner = make_company()
    init = client.post(
        f"{API}/uploads/init",
        json={"filename": "recent.txt", "size": 3, "mimeType": "text/plain"},
        headers=owner["headers"],
    ).json()["data"]
    client.put(init["uploadUrl"], content=b"abc", headers=init["headers"])
    client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=owner["headers"])
    client.delete(f"{API}/files/{init['fileId']}", headers=owner["headers"])

    sweeper.run_once()

    assert local_store.head_object(init["storageKey"]) is not None
    record = file_record_crud.get(db_session_fixture, init["fileId"], include_deleted=True)
    assert record is not None and record.is_deleted


def test_old_daily_usage_rows_are_pruned(make_company, db_session_fixture):
    owner = make_company()
    db = db_session_fixture
    old_day = date.today() - timedelta(days=45)
    db.add(DailyUsage(user_id=owner["user_id"], usage_date=old_day, upload_size=1, upload_count=1))
    db.commit()

    report = sweeper.run_once()

    assert report.usage_rows_pruned >= 1
    remaining = db.query(DailyUsage).filter(
        DailyUsage.user_id == owner["user_id"], DailyUsage.usage_date == old_day
    ).count()
    assert remaining == 0


def test_sweep_is_skipped_while_another_run_holds_the_lock(local_store):
    other = ReconciliationSweeper(store_provider=lambda: local_store)
    assert other._lock.acquire()
    try:
        assert other.run_once().skipped is True
    finally:
        other._lock.release()
    assert other.run_once().skipped is False


def test_sweeper_continues_after_item_failure(make_company, local_store, db_session_fixture):
    """单个条目失败只计数，不中断整次清理。"""

    class FailingStore:
        def __init__(self, inner):
            self.inner = inner
            self.calls = 0

        def abort_multipart(self, key, upload_id):
            self.inner.abort_multipart(key, upload_id)

        def head_object(self, key):
            self.calls += 1
            if self.calls == 1:
                raise OSError("storage unavailable")
            return self.inner.head_object(key)

        def delete_object(self, key):
            self.inner.delete_object(key)

    owner = make_company()
    first_id, _, _ = _pending_record(db_session_fixture, local_store, owner, age=timedelta(days=3))
    second_id, _, _ = _pending_record(db_session_fixture, local_store, owner, age=timedelta(days=3))

    failing = FailingStore(local_store)
    report = ReconciliationSweeper(store_provider=lambda: failing).run_once()

    assert report.failures == 1
    assert report.stale_removed >= 1
    db_session_fixture.expire_all()
    remaining = [
        file_id
        for file_id in (first_id, second_id)
        if file_record_crud.get(db_session_fixture, file_id, include_deleted=True) is not None
    ]
    assert remaining == [first_id]

    sweeper.run_once()
    db_session_fixture.expire_all()
    assert file_record_crud.get(db_session_fixture, first_id, include_deleted=True) is None


def test_manual_sweep_endpoint_requires_super_admin(client: TestClient, make_company, superadmin_headers):
    owner = make_company()
    assert client.post(f"{API}/maintenance/sweep", headers=owner["headers"]).status_code == 403
    response = client.post(f"{API}/maintenance/sweep", headers=superadmin_headers)
    assert response.status_code == 200
    assert set(response.json()["data"]) == {"skipped", "stale_removed", "purged", "usage_rows_pruned", "failures"}


def test_quota_warning_scan_counts_users_near_limit(client: TestClient, make_company, make_member):
    admin = make_company()
    member = make_member(admin, storage_allocated=100)
    init = client.post(
        f"{API}/uploads/init",
        json={"filename": "near.txt", "size": 90, "mimeType": "text/plain"},
        headers=member["headers"],
    ).json()["data"]
    client.put(init["uploadUrl"], content=b"n" * 90, headers=init["headers"])
    client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=member["headers"])

    result = sweeper.scan_quota_warnings()
    assert result["near_storage"] >= 1
