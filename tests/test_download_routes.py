"""
tests/test_download_routes.py -- Integration tests for the /api/v1/downloads routes.

Fixtures used (from conftest.py):
  api_client -- (TestClient, Portal) with seeded users, resources and files

Covers:
  - session downloads via Bearer header and access_token cookie
  - anonymous downloads with a signed token, and their refusal when bad
  - error envelope shape and status codes for 400/403/404
  - POST /downloads/links: auth required, rule table applied, link works
  - one audit row per GET
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

from jose import jwt

from core.models import ResourceType


def _url(portal, kind: str, key: str | None = None) -> str:
    rid = portal.ids[key or kind]
    return f"/api/v1/downloads?resource_type={kind}&resource_id={rid}"


class TestSessionDownloads:
    def test_owner_downloads_with_bearer(self, api_client):
        client, portal = api_client
        resp = client.get(_url(portal, "plan_document"), headers=portal.session("acme"))
        assert resp.status_code == 200
        assert resp.content == b"%PDF-1.4 plan"
        assert resp.headers["content-type"] == "application/pdf"
        assert resp.headers["content-disposition"] == 'attachment; filename="Q3 plan.pdf"'
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["x-content-type-options"] == "nosniff"

    def test_owner_downloads_with_cookie(self, api_client):
        client, portal = api_client
        token = portal.session("acme")["Authorization"].split(" ", 1)[1]
        client.cookies.set("access_token", token)
        try:
            resp = client.get(_url(portal, "task_upload"))
        finally:
            client.cookies.clear()
        assert resp.status_code == 200
        assert resp.headers["content-length"] == str(len(resp.content))

    def test_other_client_forbidden(self, api_client):
        client, portal = api_client
        resp = client.get(_url(portal, "plan_document"), headers=portal.session("globex"))
        assert resp.status_code == 403
        assert resp.json() == {"error": {"code": "access_denied", "message": "Access denied.", "detail": None}}
        assert resp.headers["cache-control"] == "no-store"

    def test_backup_forbidden_for_employee(self, api_client):
        client, portal = api_client
        resp = client.get(_url(portal, "backup"), headers=portal.session("erin"))
        assert resp.status_code == 403

    def test_admin_reads_backup(self, api_client):
        client, portal = api_client
        resp = client.get(_url(portal, "backup"), headers=portal.session("admin"))
        assert resp.status_code == 200
        assert resp.content == b"PK backup archive"

    def test_deactivated_user_has_no_session(self, api_client):
        client, portal = api_client
        evan = portal.actors["evan"]
        portal.user_store.set_active(evan.id, False)
        try:
            resp = client.get(_url(portal, "task_upload"), headers=portal.session("evan"))
        finally:
            portal.user_store.set_active(evan.id, True)
        # No session and no token.
        assert resp.status_code == 400

    def test_forged_session_is_ignored(self, api_client):
        client, portal = api_client
        resp = client.get(_url(portal, "task_upload"), headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"


class TestTokenDownloads:
    def test_valid_token_without_session(self, api_client):
        client, portal = api_client
        rid = portal.ids["support_attachment"]
        token = portal.tokens().issue(rid, ResourceType.support_attachment)
        params = {"resource_type": "support_attachment", "resource_id": rid, "token": token}
        resp = client.get("/api/v1/downloads", params=params)
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"

    def test_token_for_other_type_forbidden(self, api_client):
        client, portal = api_client
        rid = portal.ids["task_upload"]
        token = portal.tokens().issue(rid, ResourceType.plan_document)
        params = {"resource_type": "task_upload", "resource_id": rid, "token": token}
        resp = client.get("/api/v1/downloads", params=params)
        assert resp.status_code == 403

    def test_backup_token_forbidden(self, api_client):
        client, portal = api_client
        rid = portal.ids["backup"]
        token = portal.tokens().issue(rid, ResourceType.backup)
        params = {"resource_type": "backup", "resource_id": rid, "token": token}
        resp = client.get("/api/v1/downloads", params=params)
        assert resp.status_code == 403


class TestErrors:
    def test_missing_parameters_are_400_not_422(self, api_client):
        client, _ = api_client
        resp = client.get("/api/v1/downloads")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"

    def test_non_numeric_id(self, api_client):
        client, portal = api_client
        resp = client.get(
            "/api/v1/downloads?resource_type=task_upload&resource_id=1%20OR%201=1", headers=portal.session("admin")
        )
        assert resp.status_code == 400

    def test_unknown_record_404(self, api_client):
        client, portal = api_client
        resp = client.get(
            "/api/v1/downloads?resource_type=task_upload&resource_id=987654", headers=portal.session("admin")
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "File not found."

    def test_path_escape_is_generic_403(self, api_client):
        client, portal = api_client
        resp = client.get(_url(portal, "task_upload", "escape"), headers=portal.session("acme"))
        assert resp.status_code == 403
        body = resp.text
        assert "passwd" not in body
        assert "root" not in body


class TestAuditTrail:
    def test_each_get_writes_one_entry(self, api_client):
        client, portal = api_client
        before = portal.audit_log.count()
        client.get(_url(portal, "plan_document"), headers=portal.session("acme"))
        client.get(_url(portal, "plan_document"), headers=portal.session("globex"))
        client.get("/api/v1/downloads")
        assert portal.audit_log.count() == before + 3

        newest, middle, oldest = portal.audit_log.recent(3)
        assert oldest.outcome == "completed"
        assert middle.outcome == "denied"
        assert newest.outcome == "invalid_request"
        assert newest.source_ip == "testclient"

    def test_failing_session_lookup_is_audited(self, api_client, monkeypatch):
        client, portal = api_client
        headers = portal.session("acme")

        def locked(user_id):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(portal.user_store, "get_by_id", locked)
        before = portal.audit_log.count()
        resp = client.get(_url(portal, "task_upload"), headers=headers)
        monkeypatch.undo()

        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "code": "internal_error",
            "message": "An unexpected error occurred.",
            "detail": None,
        }
        assert "locked" not in resp.text
        assert portal.audit_log.count() == before + 1
        assert portal.audit_log.recent(1)[0].outcome == "server_error"


class TestCreateLink:
    def test_requires_session(self, api_client):
        client, portal = api_client
        resp = client.post(
            "/api/v1/downloads/links",
            json={"resource_type": "plan_document", "resource_id": portal.ids["plan_document"]},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_owner_gets_working_link(self, api_client):
        client, portal = api_client
        rid = portal.ids["task_upload"]
        resp = client.post(
            "/api/v1/downloads/links",
            json={"resource_type": "task_upload", "resource_id": rid, "ttl_seconds": 120},
            headers=portal.session("acme"),
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["resource_type"] == "task_upload"
        assert data["resource_id"] == rid

        url = urlsplit(data["url"])
        assert url.path == "/api/v1/downloads"
        assert parse_qs(url.query)["token"] == [data["token"]]
        issued_at = int(data["token"].split("|")[0])
        assert data["expires_at"] == issued_at + 120

        # The link works without any session.
        download = client.get(f"{url.path}?{url.query}")
        assert download.status_code == 200
        assert download.headers["content-disposition"] == 'attachment; filename="ledger.xlsx"'

    def test_non_owner_refused(self, api_client):
        client, portal = api_client
        resp = client.post(
            "/api/v1/downloads/links",
            json={"resource_type": "plan_document", "resource_id": portal.ids["plan_document"]},
            headers=portal.session("erin"),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "access_denied"

    def test_backup_link_only_for_admin(self, api_client):
        client, portal = api_client
        body = {"resource_type": "backup", "resource_id": portal.ids["backup"]}
        assert client.post("/api/v1/downloads/links", json=body, headers=portal.session("acme")).status_code == 403
        # An admin may mint one, but the anonymous holder still cannot use it.
        resp = client.post("/api/v1/downloads/links", json=body, headers=portal.session("admin"))
        assert resp.status_code == 201
        url = urlsplit(resp.json()["url"])
        assert client.get(f"{url.path}?{url.query}").status_code == 403

    def test_ttl_above_limit_rejected(self, api_client):
        client, portal = api_client
        resp = client.post(
            "/api/v1/downloads/links",
            json={"resource_type": "task_upload", "resource_id": portal.ids["task_upload"], "ttl_seconds": 3600},
            headers=portal.session("acme"),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_unknown_type_rejected(self, api_client):
        client, portal = api_client
        resp = client.post(
            "/api/v1/downloads/links",
            json={"resource_type": "invoice", "resource_id": 1},
            headers=portal.session("admin"),
        )
        assert resp.status_code == 422

    def test_session_signed_with_other_key_is_unauthorized(self, api_client):
        client, portal = api_client
        acme = portal.actors["acme"]
        stale = jwt.encode({"user_id": acme.id, "role": "client", "sub": "acme"}, "x" * 64, algorithm="HS256")
        resp = client.post(
            "/api/v1/downloads/links",
            json={"resource_type": "task_upload", "resource_id": portal.ids["task_upload"]},
            headers={"Authorization": f"Bearer {stale}"},
        )
        assert resp.status_code == 401
