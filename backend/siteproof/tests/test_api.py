from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from siteproof.database import get_session
from siteproof.main import app
from siteproof.services.auth import create_access_token, hash_password


@pytest.fixture()
def client(session, ctx):
    def override_get_session():
        yield session

    app.dependency_overrides[get_session] = override_get_session
    # no context manager: startup would initialise the real database
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def test_healthcheck(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_login_and_me(client, session, ctx):
    ctx.pm.password_hash = hash_password("s3cret-pass")
    session.flush()

    bad = client.post("/auth/login", json={"email": ctx.pm.email, "password": "wrong"})
    assert bad.status_code == 401
    assert bad.json() == {
        "success": False,
        "error": {"message": "Invalid email or password", "code": "INVALID_CREDENTIALS"},
    }

    response = client.post("/auth/login", json={"email": ctx.pm.email, "password": "s3cret-pass"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    token = body["data"]["accessToken"]
    assert body["data"]["user"]["projectRoles"] == {ctx.project.id: "project_manager"}

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["id"] == ctx.pm.id


def test_requests_without_token_are_rejected(client):
    response = client.get("/auth/me")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"

    garbage = client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == 401
    assert garbage.json()["success"] is False


def test_lot_listing_is_scoped_and_paginated(client, ctx, make_lot):
    for number in ("LOT-001", "LOT-002", "LOT-003"):
        make_lot(number, subcontractor=ctx.sub_a)
    hidden = make_lot("LOT-900")

    response = client.get(
        "/lots",
        params={"projectId": ctx.project.id, "limit": 2, "sortBy": "lotNumber", "sortOrder": "asc"},
        headers=auth(ctx.sub_a_user),
    )
    assert response.status_code == 200
    body = response.json()
    assert [lot["lotNumber"] for lot in body["data"]] == ["LOT-001", "LOT-002"]
    assert body["pagination"] == {
        "total": 3,
        "page": 1,
        "limit": 2,
        "totalPages": 2,
        "hasNextPage": True,
        "hasPrevPage": False,
    }

    missing = client.get(f"/lots/{hidden.id}", headers=auth(ctx.sub_a_user))
    assert missing.status_code == 404
    assert missing.json()["error"] == {"message": "Lot not found", "code": "NOT_FOUND"}


def test_lot_validation_and_permission_errors(client, ctx):
    invalid = client.post("/lots", json={"projectId": ctx.project.id}, headers=auth(ctx.foreman))
    assert invalid.status_code == 400
    error = invalid.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert "lotNumber" in error["details"]["fields"]

    forbidden = client.post(
        "/lots", json={"projectId": ctx.project.id, "lotNumber": "LOT-001"}, headers=auth(ctx.viewer)
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "FORBIDDEN"

    created = client.post(
        "/lots",
        json={"projectId": ctx.project.id, "lotNumber": "LOT-001", "chainageStart": 100, "chainageEnd": 250},
        headers=auth(ctx.foreman),
    )
    assert created.status_code == 201
    assert created.json()["data"]["status"] == "not_started"

    duplicate = client.post(
        "/lots", json={"projectId": ctx.project.id, "lotNumber": "LOT-001"}, headers=auth(ctx.foreman)
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["details"] == {"field": "lotNumber"}


def test_major_ncr_over_http(client, ctx, make_lot):
    lot = make_lot("LOT-001")
    response = client.post(
        "/ncrs",
        json={
            "projectId": ctx.project.id,
            "description": "Honeycombing on wall face",
            "severity": "major",
            "lotIds": [lot.id],
        },
        headers=auth(ctx.qm),
    )
    assert response.status_code == 201
    ncr = response.json()["data"]
    assert ncr["ncrNumber"] == "NCR-0001"
    assert ncr["qmApprovalRequired"] is True

    lot_view = client.get(f"/lots/{lot.id}", headers=auth(ctx.pm))
    assert lot_view.json()["data"]["status"] == "ncr_raised"
    assert lot_view.json()["data"]["progressStatus"] == "not_started"

    close = client.post(f"/ncrs/{ncr['id']}/close", json={}, headers=auth(ctx.qm))
    assert close.status_code == 400
    assert close.json()["error"]["code"] == "QM_APPROVAL_REQUIRED"


def test_docket_flow_and_notifications(client, ctx):
    created = client.post(
        "/dockets",
        json={
            "projectId": ctx.project.id,
            "date": "2024-06-03",
            "labour": [{"workerName": "Sam", "hours": 8}],
        },
        headers=auth(ctx.sub_a_user),
    )
    assert created.status_code == 201
    docket_id = created.json()["data"]["id"]

    submitted = client.post(f"/dockets/{docket_id}/submit", headers=auth(ctx.sub_a_user))
    assert submitted.json()["data"]["status"] == "pending_approval"

    inbox = client.get("/notifications", headers=auth(ctx.foreman))
    assert [item["eventType"] for item in inbox.json()["data"]] == ["docket_pending"]

    approved = client.post(f"/dockets/{docket_id}/approve", json={}, headers=auth(ctx.foreman))
    assert approved.status_code == 200
    assert approved.json()["data"]["status"] == "approved"
    assert approved.json()["data"]["totalLabourApproved"] == 8

    hidden = client.get(f"/dockets/{docket_id}", headers=auth(ctx.sub_b_user))
    assert hidden.status_code == 404


def test_dispatch_requires_company_admin(client, ctx):
    client.post(
        "/ncrs",
        json={"projectId": ctx.project.id, "description": "Missing cover", "responsibleUserId": ctx.sm.id},
        headers=auth(ctx.qm),
    )

    denied = client.post("/notifications/dispatch", headers=auth(ctx.pm))
    assert denied.status_code == 403

    response = client.post("/notifications/dispatch", headers=auth(ctx.owner))
    assert response.status_code == 200
    assert response.json()["data"] == {"delivered": 1, "retrying": 0, "failed": 0}
