"""Admin permission checks and admin endpoints"""
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from app.admin.middleware import check_admin_permission
from app.credits.manager import TokenManager


async def test_permission_matrix(db, make_user):
    admin_id = await make_user(is_admin=True)
    member_id = await make_user()

    assert (await check_admin_permission(None, db)).is_admin is False
    assert (await check_admin_permission("", db)).is_admin is False
    assert (await check_admin_permission("not-an-object-id", db)).is_admin is False
    assert (await check_admin_permission(str(ObjectId()), db)).is_admin is False
    assert (await check_admin_permission(member_id, db)).is_admin is False

    granted = await check_admin_permission(admin_id, db)
    assert granted.is_admin is True
    assert granted.error is None
    assert granted.user["_id"] == admin_id


async def test_refusals_explain_themselves(db, make_user):
    member_id = await make_user()

    assert (await check_admin_permission(None, db)).error == "Authentication required"
    assert (await check_admin_permission(str(ObjectId()), db)).error == "User not found"
    assert (await check_admin_permission(member_id, db)).error == "Admin access required"


@pytest.mark.parametrize("method,path", [
    ("GET", "/api/admin/users"),
    ("GET", "/api/admin/anonymous-users"),
    ("GET", "/api/admin/analytics"),
    ("GET", "/api/admin/audit"),
    ("GET", "/api/admin/transcriptions"),
    ("POST", "/api/admin/cleanup-anonymous"),
])
async def test_admin_routes_require_admin(client, make_user, headers_for, method, path):
    member_id = await make_user()

    response = await client.request(method, path)
    assert response.status_code == 401

    response = await client.request(method, path, headers=headers_for(member_id))
    assert response.status_code == 403


async def test_invalid_bearer_token_is_401(client):
    response = await client.get("/api/admin/users", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


async def test_list_users(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True, email="admin@example.com")
    await make_user(tokens=4, email="member@example.com")

    response = await client.get("/api/admin/users", headers=headers_for(admin_id))

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    emails = {user["email"] for user in body["users"]}
    assert emails == {"admin@example.com", "member@example.com"}
    assert all(isinstance(user["_id"], str) for user in body["users"])


async def test_patch_tokens_records_deduction(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=23)

    response = await client.patch(
        f"/api/admin/users/{user_id}", json={"tokens": 13}, headers=headers_for(admin_id)
    )

    assert response.status_code == 200
    body = response.json()
    assert body["updatedFields"] == ["tokens"]
    assert body["tokens"]["tokensChanged"] == -10

    entry = await db.spendingHistory.find_one({"userId": user_id})
    assert entry["tokensChanged"] == -10
    assert entry["balanceAfter"] == 13
    assert entry["action"] == "admin_token_deduction"
    assert (await db.users.find_one({"_id": ObjectId(user_id)}))["tokens"] == 13


async def test_patch_conflict_leaves_flags_untouched(client, db, make_user, headers_for, monkeypatch):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=8)

    async def balance_keeps_moving(*args, **kwargs):
        return None

    monkeypatch.setattr(TokenManager, "apply_delta", staticmethod(balance_keeps_moving))

    response = await client.patch(
        f"/api/admin/users/{user_id}",
        json={"tokens": 2, "isActive": False, "isAdmin": True},
        headers=headers_for(admin_id)
    )

    assert response.status_code == 409
    user = await db.users.find_one({"_id": ObjectId(user_id)})
    assert user["tokens"] == 8
    assert user["isActive"] is True
    assert user["isAdmin"] is False
    assert await db.adminActions.count_documents({}) == 0


async def test_patch_tokens_and_flags_together(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=3)

    response = await client.patch(
        f"/api/admin/users/{user_id}",
        json={"tokens": 5, "isActive": False},
        headers=headers_for(admin_id)
    )

    assert response.status_code == 200
    assert response.json()["updatedFields"] == ["tokens", "isActive"]
    user = await db.users.find_one({"_id": ObjectId(user_id)})
    assert user["tokens"] == 5
    assert user["isActive"] is False


async def test_patch_flags_and_audit_trail(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=1)

    response = await client.patch(
        f"/api/admin/users/{user_id}",
        json={"isActive": False, "isAdmin": True},
        headers=headers_for(admin_id)
    )

    assert response.status_code == 200
    assert sorted(response.json()["updatedFields"]) == ["isActive", "isAdmin"]
    user = await db.users.find_one({"_id": ObjectId(user_id)})
    assert user["isActive"] is False
    assert user["isAdmin"] is True
    assert await db.spendingHistory.count_documents({}) == 0

    action = await db.adminActions.find_one({"targetUserId": user_id})
    assert action["adminId"] == admin_id
    assert action["action"] == "update_user"


@pytest.mark.parametrize("body", [{"tokens": "abc"}, {"tokens": -1}, {"tokens": 2.5}, {"isActive": "yes"}])
async def test_patch_rejects_bad_values(client, db, make_user, headers_for, body):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=5)

    response = await client.patch(f"/api/admin/users/{user_id}", json=body, headers=headers_for(admin_id))

    assert response.status_code == 400
    assert (await db.users.find_one({"_id": ObjectId(user_id)}))["tokens"] == 5


async def test_patch_bad_or_unknown_id(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True)

    response = await client.patch("/api/admin/users/xyz", json={"tokens": 1}, headers=headers_for(admin_id))
    assert response.status_code == 400

    response = await client.patch(f"/api/admin/users/{ObjectId()}", json={"tokens": 1}, headers=headers_for(admin_id))
    assert response.status_code == 404


async def test_user_details_with_stats(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=0)
    now = datetime.utcnow()
    await db.transcriptions.insert_many([
        {"userId": user_id, "title": "a", "status": "completed", "duration": 60, "createdAt": now},
        {"userId": user_id, "title": "b", "status": "error", "duration": 30, "createdAt": now},
    ])
    await db.spendingHistory.insert_many([
        {"userId": user_id, "action": "token_purchase", "tokensChanged": 10, "description": "buy", "balanceAfter": 10, "createdAt": now},
        {"userId": user_id, "action": "prd_generation", "tokensChanged": -2, "description": "prd", "balanceAfter": 8, "createdAt": now},
        {"userId": user_id, "action": "transcription_creation", "tokensChanged": -1, "description": "t", "balanceAfter": 7, "createdAt": now},
    ])

    response = await client.get(f"/api/admin/users/{user_id}", headers=headers_for(admin_id))

    assert response.status_code == 200
    body = response.json()
    assert body["user"]["_id"] == user_id
    assert len(body["transcriptions"]) == 2
    assert len(body["spendingHistory"]) == 3
    assert body["stats"] == {
        "totalTranscriptions": 2,
        "completedTranscriptions": 1,
        "totalSpent": 3,
        "totalEarned": 10,
    }


async def test_user_details_unknown_user(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True)

    response = await client.get(f"/api/admin/users/{ObjectId()}", headers=headers_for(admin_id))
    assert response.status_code == 404


async def test_payment_failure_compensation(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=2, email="buyer@example.com")

    response = await client.post(
        "/api/admin/payment-failure",
        json={"userId": user_id, "tokensToGrant": 5, "reason": "Card charged twice", "stripeSessionId": "cs_test_1"},
        headers=headers_for(admin_id)
    )

    assert response.status_code == 200
    body = response.json()
    assert body["user"]["previousTokens"] == 2
    assert body["user"]["newTokens"] == 7

    entry = await db.spendingHistory.find_one({"userId": user_id})
    assert entry["action"] == "payment_failure_compensation"
    assert entry["tokensChanged"] == 5
    assert entry["balanceAfter"] == 7
    assert entry["description"] == "Payment failure compensation: Card charged twice (Session: cs_test_1)"


async def test_payment_failure_default_reason(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=0)

    await client.post(
        "/api/admin/payment-failure",
        json={"userId": user_id, "tokensToGrant": 1},
        headers=headers_for(admin_id)
    )

    entry = await db.spendingHistory.find_one({"userId": user_id})
    assert entry["description"] == "Payment failure compensation: Payment processing failed"


@pytest.mark.parametrize("payload,status", [
    ({"userId": "bad", "tokensToGrant": 5}, 400),
    ({"tokensToGrant": 5}, 400),
    ({"userId": "USER", "tokensToGrant": 0}, 400),
    ({"userId": "USER", "tokensToGrant": -3}, 400),
    ({"userId": "USER", "tokensToGrant": "5"}, 400),
    ({"userId": "UNKNOWN", "tokensToGrant": 5}, 404),
])
async def test_payment_failure_validation(client, db, make_user, headers_for, payload, status):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=0)
    payload = dict(payload)
    if payload.get("userId") == "USER":
        payload["userId"] = user_id
    elif payload.get("userId") == "UNKNOWN":
        payload["userId"] = str(ObjectId())

    response = await client.post("/api/admin/payment-failure", json=payload, headers=headers_for(admin_id))

    assert response.status_code == status
    assert await db.spendingHistory.count_documents({}) == 0


async def test_anonymous_users_page(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    now = datetime.utcnow()
    await db.anonymousUsers.insert_many([
        {"fingerprint": "a1", "transcriptionCount": 3, "isTransferUsed": True, "transferredToUserId": "u", "createdAt": now},
        {"fingerprint": "a2", "transcriptionCount": 1, "isTransferUsed": False, "createdAt": now},
        {"fingerprint": "a3", "transcriptionCount": 2, "createdAt": now},
    ])

    response = await client.get("/api/admin/anonymous-users?page=1&limit=2", headers=headers_for(admin_id))

    assert response.status_code == 200
    body = response.json()
    assert len(body["anonymousUsers"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}
    assert body["stats"] == {
        "totalUsers": 3,
        "totalTranscriptions": 6,
        "transferredUsers": 1,
        "activeUsers": 2,
    }


async def test_audit_endpoint(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True)

    response = await client.get("/api/admin/audit", headers=headers_for(admin_id))

    assert response.status_code == 200
    assert response.json() == {"suspiciousUsers": [], "duplicateFingerprints": [], "issues": []}


async def seed_transcriptions(db, owner_id):
    now = datetime.utcnow()
    await db.anonymousUsers.insert_one({"fingerprint": "fp-anon", "ip": "203.0.113.9", "transcriptionCount": 1, "createdAt": now})
    await db.transcriptions.insert_many([
        {"userId": owner_id, "title": "Intro to Python", "status": "completed", "content": "hello world",
         "isPublic": True, "createdAt": now},
        {"userFingerprint": "fp-anon", "title": "Cooking (part 1)", "status": "pending",
         "createdAt": now - timedelta(minutes=1)},
        {"userFingerprint": "fp-ghost", "title": "Gardening", "status": "error", "content": "",
         "createdAt": now - timedelta(minutes=2)},
    ])


async def test_all_transcriptions_with_owners_and_stats(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    owner_id = await make_user(email="owner@example.com")
    await seed_transcriptions(db, owner_id)

    response = await client.get("/api/admin/transcriptions", headers=headers_for(admin_id))

    assert response.status_code == 200
    body = response.json()
    assert [t["title"] for t in body["transcriptions"]] == ["Intro to Python", "Cooking (part 1)", "Gardening"]
    owners = [t["userInfo"] for t in body["transcriptions"]]
    assert owners[0] == {"type": "registered", "userId": owner_id, "name": "Test User", "email": "owner@example.com"}
    assert owners[1] == {"type": "anonymous", "fingerprint": "fp-anon", "ip": "203.0.113.9"}
    assert owners[2] == {"type": "unknown", "fingerprint": "fp-ghost"}
    assert body["pagination"] == {"page": 1, "limit": 50, "total": 3, "totalPages": 1}
    assert body["stats"] == {"total": 3, "completed": 1, "processing": 0, "pending": 1, "error": 1, "public": 1}
    assert body["userTypeBreakdown"] == {"registered": 1, "anonymous": 2, "unknown": 0}


@pytest.mark.parametrize("query,titles", [
    ("status=completed", ["Intro to Python"]),
    ("hasContent=true", ["Intro to Python"]),
    ("hasContent=false", ["Cooking (part 1)", "Gardening"]),
    ("search=PYTHON", ["Intro to Python"]),
    ("search=(part", ["Cooking (part 1)"]),
    ("userFingerprint=fp-anon", ["Cooking (part 1)"]),
    ("status=error&hasContent=false", ["Gardening"]),
])
async def test_all_transcriptions_filters(client, db, make_user, headers_for, query, titles):
    admin_id = await make_user(is_admin=True)
    await seed_transcriptions(db, await make_user())

    response = await client.get(f"/api/admin/transcriptions?{query}", headers=headers_for(admin_id))

    assert response.status_code == 200
    body = response.json()
    assert [t["title"] for t in body["transcriptions"]] == titles
    assert body["pagination"]["total"] == len(titles)


async def test_all_transcriptions_by_user_and_page(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    owner_id = await make_user()
    await seed_transcriptions(db, owner_id)

    response = await client.get(f"/api/admin/transcriptions?userId={owner_id}", headers=headers_for(admin_id))
    assert [t["title"] for t in response.json()["transcriptions"]] == ["Intro to Python"]

    response = await client.get("/api/admin/transcriptions?page=2&limit=2", headers=headers_for(admin_id))
    body = response.json()
    assert [t["title"] for t in body["transcriptions"]] == ["Gardening"]
    assert body["pagination"]["totalPages"] == 2


async def test_all_transcriptions_rejects_unknown_status(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True)

    response = await client.get("/api/admin/transcriptions?status=archived", headers=headers_for(admin_id))

    assert response.status_code == 400
