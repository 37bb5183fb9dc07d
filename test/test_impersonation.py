"""Admin impersonation tokens and the user balance endpoints"""
from datetime import datetime, timedelta

from bson import ObjectId
from jose import jwt

from app.auth.impersonation import create_impersonation_token
from config import settings


async def start(client, admin_id, user_id, headers_for):
    response = await client.post("/api/admin/impersonate", json={"userId": user_id}, headers=headers_for(admin_id))
    client.cookies.clear()
    return response


async def test_own_balance_without_impersonation(client, make_user, headers_for):
    user_id = await make_user(tokens=4)

    response = await client.get("/api/user/tokens", headers=headers_for(user_id))

    assert response.status_code == 200
    assert response.json() == {"tokens": 4, "hasTokens": True}


async def test_balance_requires_auth(client):
    assert (await client.get("/api/user/tokens")).status_code == 401
    assert (await client.get("/api/user/spending-history")).status_code == 401


async def test_admin_sees_impersonated_balance(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True, tokens=100)
    user_id = await make_user(tokens=3, email="target@example.com")

    response = await start(client, admin_id, user_id, headers_for)

    assert response.status_code == 200
    body = response.json()
    assert body["impersonationData"]["impersonatedUserId"] == user_id
    assert body["message"] == "Now impersonating target@example.com"
    assert "impersonation=" in response.headers["set-cookie"]

    headers = {**headers_for(admin_id), "X-Impersonation-Token": body["impersonationToken"]}
    response = await client.get("/api/user/tokens", headers=headers)
    assert response.json() == {"tokens": 3, "hasTokens": True}


async def test_impersonation_cookie_is_honoured(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True, tokens=100)
    user_id = await make_user(tokens=0)
    token = create_impersonation_token(admin_id, user_id)

    headers = {**headers_for(admin_id), "Cookie": f"impersonation={token}"}
    response = await client.get("/api/user/tokens", headers=headers)

    assert response.json() == {"tokens": 0, "hasTokens": False}


async def test_spending_history_follows_impersonation(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user()
    await db.spendingHistory.insert_one({
        "userId": user_id, "action": "token_purchase", "tokensChanged": 5,
        "description": "buy", "balanceAfter": 5, "createdAt": datetime.utcnow(),
    })

    headers = {**headers_for(admin_id), "X-Impersonation-Token": create_impersonation_token(admin_id, user_id)}
    response = await client.get("/api/user/spending-history", headers=headers)

    assert response.status_code == 200
    history = response.json()["spendingHistory"]
    assert len(history) == 1
    assert history[0]["tokensChanged"] == 5


async def test_token_is_bound_to_issuing_admin(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    other_admin = await make_user(is_admin=True)
    user_id = await make_user()

    headers = {**headers_for(other_admin), "X-Impersonation-Token": create_impersonation_token(admin_id, user_id)}
    response = await client.get("/api/user/tokens", headers=headers)

    assert response.status_code == 403


async def test_demoted_admin_loses_impersonation(client, db, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user(tokens=9)
    token = create_impersonation_token(admin_id, user_id)

    await db.users.update_one({"_id": ObjectId(admin_id)}, {"$set": {"isAdmin": False}})

    headers = {**headers_for(admin_id), "X-Impersonation-Token": token}
    response = await client.get("/api/user/tokens", headers=headers)

    assert response.status_code == 403


async def test_expired_or_forged_tokens_are_401(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True)
    user_id = await make_user()

    expired = jwt.encode(
        {
            "type": "impersonation",
            "originalAdminId": admin_id,
            "impersonatedUserId": user_id,
            "exp": datetime.utcnow() - timedelta(minutes=1),
        },
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
    forged = jwt.encode(
        {"type": "impersonation", "originalAdminId": admin_id, "impersonatedUserId": user_id},
        "some-other-secret",
        algorithm=settings.JWT_ALGORITHM,
    )
    access_token = headers_for(user_id)["Authorization"].split()[1]

    for token in (expired, forged, access_token, "garbage"):
        headers = {**headers_for(admin_id), "X-Impersonation-Token": token}
        response = await client.get("/api/user/tokens", headers=headers)
        assert response.status_code == 401


async def test_only_admins_can_impersonate(client, make_user, headers_for):
    member_id = await make_user()
    user_id = await make_user()

    response = await start(client, member_id, user_id, headers_for)

    assert response.status_code == 403


async def test_impersonate_validates_target(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True)

    assert (await start(client, admin_id, "nope", headers_for)).status_code == 400
    assert (await start(client, admin_id, str(ObjectId()), headers_for)).status_code == 404


async def test_end_impersonation_clears_cookie(client, make_user, headers_for):
    admin_id = await make_user(is_admin=True)

    response = await client.delete("/api/admin/impersonate", headers=headers_for(admin_id))

    assert response.status_code == 200
    assert response.json()["success"] is True
    cookie = response.headers["set-cookie"]
    assert cookie.startswith("impersonation=")
    assert "Max-Age=0" in cookie
