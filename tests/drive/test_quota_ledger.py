"""三级配额账本测试：容量分配、公司总量调整与对账修复。"""

import pytest
from fastapi.testclient import TestClient

from app.packages.drive.core.config import GIB, MIB
from app.packages.drive.core.exceptions import BelowAllocatedError, InsufficientAdminCapacityError
from app.packages.drive.crud.companies import company_crud
from app.packages.drive.crud.users import user_crud
from app.packages.drive.models.company import Company
from app.packages.drive.models.file_record import FileRecord
from app.packages.drive.models.user import User
from app.packages.drive.services.quota_ledger import quota_ledger
from conftest import API


def _user(client: TestClient, headers: dict, user_id: int) -> dict:
    response = client.get(f"{API}/storage/users/{user_id}", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _company(db, company_id: int) -> Company:
    db.expire_all()
    return company_crud.get(db, company_id)


def _upload(client: TestClient, headers: dict, content: bytes, mime: str = "text/plain") -> int:
    init = client.post(
        f"{API}/uploads/init",
        json={"filename": "data.txt", "size": len(content), "mimeType": mime},
        headers=headers,
    ).json()["data"]
    assert client.put(init["uploadUrl"], content=content, headers=init["headers"]).status_code == 200
    response = client.post(f"{API}/uploads/{init['fileId']}/finalize", headers=headers)
    assert response.status_code == 200, response.text
    return init["fileId"]


def test_admin_allocates_to_member(client: TestClient, make_company, make_member):
    """管理员 10GiB 额度下为成员分配 3GiB，管理员剩余 7GiB。"""
    admin = make_company(total_storage=10 * GIB)
    before = _user(client, admin["headers"], admin["user_id"])
    assert before["storage_allocated"] == 10 * GIB
    assert before["allocated_to_users"] == 0

    member = make_member(admin, storage_allocated=3 * GIB)

    admin_after = _user(client, admin["headers"], admin["user_id"])
    assert admin_after["allocated_to_users"] == 3 * GIB
    assert admin_after["available"] == 7 * GIB
    member_after = _user(client, admin["headers"], member["user_id"])
    assert member_after["storage_allocated"] == 3 * GIB

    summary = client.get(f"{API}/companies/summary", headers=admin["headers"]).json()["data"]
    assert summary["allocated_to_users"] == 3 * GIB
    assert summary["available_to_allocate"] == 7 * GIB
    assert {m["user_id"] for m in summary["members"]} == {admin["user_id"], member["user_id"]}


def test_reallocation_settles_the_difference(client: TestClient, make_company, make_member):
    admin = make_company()
    member = make_member(admin, storage_allocated=3 * GIB)

    response = client.post(
        f"{API}/storage/allocate-to-user",
        json={"userId": member["user_id"], "storageBytes": 1 * GIB},
        headers=admin["headers"],
    )
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["user"]["storage_allocated"] == 1 * GIB
    assert data["admin_allocated_to_users"] == 1 * GIB
    assert data["admin_available"] == 4 * GIB

    company = client.get(f"{API}/companies/me", headers=admin["headers"]).json()["data"]
    assert company["allocated_to_users"] == 1 * GIB


def test_allocation_beyond_admin_capacity_is_rejected(client: TestClient, make_company, make_member):
    admin = make_company()
    member = make_member(admin, storage_allocated=0)

    response = client.post(
        f"{API}/storage/allocate-to-user",
        json={"userId": member["user_id"], "storageBytes": 6 * GIB},
        headers=admin["headers"],
    )
    assert response.status_code == 400
    assert response.json()["data"] == {"available": 5 * GIB, "requested": 6 * GIB}
    assert _user(client, admin["headers"], member["user_id"])["storage_allocated"] == 0
    assert _user(client, admin["headers"], admin["user_id"])["allocated_to_users"] == 0


def test_add_member_beyond_admin_capacity_leaves_no_account(client: TestClient, make_company):
    """分配失败时整个添加操作回滚：不留账号、不改成员计数，同名可重试。"""
    admin = make_company()
    username = "overdrawn-member"
    body = {"username": username, "password": "member123", "storageAllocated": 6 * GIB}

    response = client.post(f"{API}/companies/members", json=body, headers=admin["headers"])
    assert response.status_code == 400
    assert response.json()["data"] == {"available": 5 * GIB, "requested": 6 * GIB}

    login = client.post(f"{API}/auth/login", json={"username": username, "password": "member123"})
    assert login.status_code == 401
    company = client.get(f"{API}/companies/me", headers=admin["headers"]).json()["data"]
    assert company["user_count"] == 1
    assert company["allocated_to_users"] == 0
    assert _user(client, admin["headers"], admin["user_id"])["allocated_to_users"] == 0

    retry = client.post(
        f"{API}/companies/members", json={**body, "storageAllocated": 1 * GIB}, headers=admin["headers"]
    )
    assert retry.status_code == 200, retry.text
    assert retry.json()["data"]["storage_allocated"] == 1 * GIB
    company = client.get(f"{API}/companies/me", headers=admin["headers"]).json()["data"]
    assert company["user_count"] == 2
    assert company["allocated_to_users"] == 1 * GIB


def test_allocation_below_member_usage_is_rejected(client: TestClient, make_company, make_member):
    admin = make_company()
    member = make_member(admin, storage_allocated=1000)
    _upload(client, member["headers"], b"x" * 600)

    response = client.post(
        f"{API}/storage/allocate-to-user",
        json={"userId": member["user_id"], "storageBytes": 500},
        headers=admin["headers"],
    )
    assert response.status_code == 400
    assert _user(client, admin["headers"], member["user_id"])["storage_allocated"] == 1000


def test_member_cannot_allocate(client: TestClient, make_company, make_member):
    admin = make_company()
    member = make_member(admin, storage_allocated=0)
    response = client.post(
        f"{API}/storage/allocate-to-user",
        json={"userId": member["user_id"], "storageBytes": 1},
        headers=member["headers"],
    )
    assert response.status_code == 403


def test_admin_cannot_allocate_across_companies(client: TestClient, make_company, make_member):
    admin = make_company()
    other = make_company()
    other_member = make_member(other, storage_allocated=0)
    response = client.post(
        f"{API}/storage/allocate-to-user",
        json={"userId": other_member["user_id"], "storageBytes": 1},
        headers=admin["headers"],
    )
    assert response.status_code == 403


def test_company_total_below_allocated_is_rejected(client: TestClient, make_company, make_member, db_session_fixture):
    """公司 10GiB、已分配 7GiB 时调整为 5GiB 被拒绝，差额 2GiB，状态不变。"""
    admin = make_company(total_storage=10 * GIB)
    make_member(admin, storage_allocated=4 * GIB)
    make_member(admin, storage_allocated=3 * GIB)

    response = client.put(
        f"{API}/companies/{admin['company_id']}/storage",
        json={"totalStorage": 5 * GIB},
        headers=admin["headers"],
    )
    assert response.status_code == 400
    data = response.json()["data"]
    assert data["shortfall"] == 2 * GIB
    assert data["allocatedToUsers"] == 7 * GIB

    with pytest.raises(BelowAllocatedError) as exc_info:
        quota_ledger.set_company_total(db_session_fixture, company_id=admin["company_id"], new_total=5 * GIB)
    assert exc_info.value.shortfall == 2 * GIB

    company = _company(db_session_fixture, admin["company_id"])
    assert company.total_storage == 10 * GIB
    assert company.allocated_to_users == 7 * GIB
    assert _user(client, admin["headers"], admin["user_id"])["storage_allocated"] == 10 * GIB


def test_company_total_cascades_to_admins(client: TestClient, make_company, superadmin_headers):
    admin = make_company()
    response = client.post(
        f"{API}/storage/allocate-to-company",
        json={"companyId": admin["company_id"], "storageBytes": 20 * GIB},
        headers=superadmin_headers,
    )
    assert response.status_code == 200, response.text
    assert response.json()["data"]["total_storage"] == 20 * GIB
    assert _user(client, admin["headers"], admin["user_id"])["storage_allocated"] == 20 * GIB


def test_company_total_minimum_and_permissions(client: TestClient, make_company, make_member):
    admin = make_company()
    member = make_member(admin, storage_allocated=0)

    too_small = client.put(
        f"{API}/companies/{admin['company_id']}/storage",
        json={"totalStorage": 100 * MIB - 1},
        headers=admin["headers"],
    )
    assert too_small.status_code == 400

    forbidden = client.put(
        f"{API}/companies/{admin['company_id']}/storage",
        json={"totalStorage": 1 * GIB},
        headers=member["headers"],
    )
    assert forbidden.status_code == 403

    not_super = client.post(
        f"{API}/storage/allocate-to-company",
        json={"companyId": admin["company_id"], "storageBytes": 1 * GIB},
        headers=admin["headers"],
    )
    assert not_super.status_code == 403


def test_admin_capacity_is_checked_by_ledger(make_company, make_member, db_session_fixture):
    admin_info = make_company()
    member_info = make_member(admin_info, storage_allocated=0)
    admin = user_crud.get(db_session_fixture, admin_info["user_id"])
    member = user_crud.get(db_session_fixture, member_info["user_id"])

    with pytest.raises(InsufficientAdminCapacityError) as exc_info:
        quota_ledger.set_user_allocation(db_session_fixture, admin=admin, target=member, new_bytes=5 * GIB + 1)
    assert exc_info.value.available == 5 * GIB


def test_fix_allocations_repairs_drifted_counters(client: TestClient, make_company, make_member, db_session_fixture):
    admin = make_company()
    first = make_member(admin, storage_allocated=2000)
    second = make_member(admin, storage_allocated=3000)
    _upload(client, first["headers"], b"1" * 700)
    _upload(client, second["headers"], b"2" * 400, mime="application/pdf")
    deleted_id = _upload(client, second["headers"], b"3" * 100)
    assert client.delete(f"{API}/files/{deleted_id}", headers=second["headers"]).status_code == 200

    db = db_session_fixture
    db.query(Company).filter(Company.id == admin["company_id"]).update(
        {"used_storage": 99, "allocated_to_users": 1, "user_count": 7}, synchronize_session=False
    )
    db.query(User).filter(User.id == admin["user_id"]).update({"allocated_to_users": 0}, synchronize_session=False)
    db.query(User).filter(User.id == first["user_id"]).update({"storage_used": 12345}, synchronize_session=False)
    db.commit()

    response = client.post(f"{API}/companies/fix-allocations", json={}, headers=admin["headers"])
    assert response.status_code == 200, response.text
    report = response.json()["data"]
    assert report["before"]["usedStorage"] == 99
    assert report["after"] == {"usedStorage": 1100, "allocatedToUsers": 5000, "userCount": 3}
    assert report["isOverAllocated"] is False

    company = _company(db, admin["company_id"])
    members = user_crud.list_by_company(db, company.id)
    regular = [m for m in members if m.role == "user"]
    assert company.allocated_to_users == sum(m.storage_allocated for m in regular)
    completed = (
        db.query(FileRecord)
        .filter(
            FileRecord.company_id == company.id,
            FileRecord.upload_status == "completed",
            FileRecord.is_deleted.is_(False),
        )
        .all()
    )
    assert company.used_storage == sum(f.size_bytes for f in completed) == 1100

    for member in members:
        if member.role == "admin":
            assert member.allocated_to_users == 5000
            assert member.storage_used + member.allocated_to_users <= member.storage_allocated
        else:
            assert member.storage_used <= member.storage_allocated
    assert _user(client, admin["headers"], first["user_id"])["storage_used"] == 700

    again = client.post(f"{API}/companies/fix-allocations", json={}, headers=admin["headers"]).json()["data"]
    assert again["before"] == again["after"] == report["after"]


def test_usage_above_company_total_is_reported(client: TestClient, make_company, db_session_fixture):
    """已用量超过公司总容量（分配量正常）时单独标记为超用。"""
    admin = make_company()
    _upload(client, admin["headers"], b"u" * 700)

    fresh = client.get(f"{API}/companies/me", headers=admin["headers"]).json()["data"]
    assert fresh["is_over_used"] is False
    assert fresh["over_used_by"] == 0

    db = db_session_fixture
    db.query(Company).filter(Company.id == admin["company_id"]).update(
        {"total_storage": 500}, synchronize_session=False
    )
    db.commit()

    company = client.get(f"{API}/companies/me", headers=admin["headers"]).json()["data"]
    assert company["is_over_allocated"] is False
    assert company["is_over_used"] is True
    assert company["over_used_by"] == 200

    report = client.post(f"{API}/companies/fix-allocations", json={}, headers=admin["headers"]).json()["data"]
    assert report["isOverAllocated"] is False
    assert report["isOverUsed"] is True
    assert report["overUsedBy"] == 200


def test_fix_allocations_requires_admin(client: TestClient, make_company, make_member):
    admin = make_company()
    member = make_member(admin, storage_allocated=0)
    response = client.post(f"{API}/companies/fix-allocations", json={}, headers=member["headers"])
    assert response.status_code == 403


def test_quota_snapshot_for_member(client: TestClient, make_company, make_member):
    admin = make_company()
    member = make_member(admin, storage_allocated=1000)
    _upload(client, member["headers"], b"m" * 850)

    quota = client.get(f"{API}/quota", headers=member["headers"]).json()["data"]
    assert quota["plan"] == "free"
    assert quota["storage"]["total"] == 1000
    assert quota["storage"]["used"] == 850
    assert quota["storage"]["available"] == 150
    assert quota["storage"]["percentage"] == 85.0
    assert quota["storage"]["isNearLimit"] is True
    assert quota["storage"]["isCritical"] is False
    assert quota["files"] == {"count": 1, "max": 100, "remaining": 99, "isNearLimit": False}
    assert quota["daily"]["used"] == 850
    assert quota["byType"]["documents"] == {"count": 1, "size": 850}
    assert quota["byType"]["videos"] == {"count": 0, "size": 0}
