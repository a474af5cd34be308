"""
test_zip_change_routes.py — ZIP change request HTTP flow.

Covers the portal submit, the operator conflict check, and approve/reject
with Airtable write-back and notification emails.
"""

from sqlmodel import select

import schemas
from models.models import Organization, ZipChangeRequest, ZipChangeStatus

CLEAN_REQUEST = ["75001", "75002", "75005", "75006", "75007"]
CONFLICTING_REQUEST = ["75001", "75003", "75004", "75005", "75006"]


def _submit(client, headers, zip_codes, **extra):
    return client.post(
        "/portal/zip-change-request",
        json={"requestedZipCodes": zip_codes, **extra},
        headers=headers,
    )


# ── Portal submit ──


class TestPortalSubmit:
    def test_submit_creates_pending_request_and_notifies_ops(self, client, portal_headers, email_outbox):
        response = _submit(client, portal_headers, CLEAN_REQUEST, reason="Expanding north")
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "pending"
        assert body["addedZipCodes"] == ["75002", "75005", "75006", "75007"]
        assert body["removedZipCodes"] == []

        assert len(email_outbox) == 1
        assert email_outbox[0]["to"] == ["ops@leadzone.io"]
        assert body["requestId"] in email_outbox[0]["html"]

    def test_comma_separated_string_is_accepted(self, client, portal_headers):
        response = _submit(client, portal_headers, "75001, 75002, 75005, 75006, 75007")
        assert response.status_code == 201

    def test_second_submit_is_409(self, client, portal_headers):
        first = _submit(client, portal_headers, CLEAN_REQUEST).json()
        response = _submit(client, portal_headers, CONFLICTING_REQUEST)
        assert response.status_code == 409
        assert response.json()["reason"] == "already_pending"
        assert response.json()["requestId"] == first["requestId"]

    def test_invalid_zip_is_400(self, client, portal_headers):
        response = _submit(client, portal_headers, ["75001", "75002", "75003", "75004", "7500"])
        assert response.status_code == 400
        assert response.json()["invalidZipCodes"] == ["7500"]

    def test_missing_field_is_400(self, client, portal_headers):
        response = client.post("/portal/zip-change-request", json={"reason": "x"}, headers=portal_headers)
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "requestedZipCodes"

    def test_wrong_content_type_is_415(self, client, portal_headers):
        response = client.post(
            "/portal/zip-change-request",
            content=b"requestedZipCodes=75001",
            headers={**portal_headers, "Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 415

    def test_requires_portal_session(self, client):
        assert _submit(client, {}, CLEAN_REQUEST).status_code == 401

    def test_tool_token_is_not_a_portal_session(self, client, tool_headers):
        assert _submit(client, tool_headers, CLEAN_REQUEST).status_code == 403

    def test_list_own_requests(self, client, portal_headers):
        submitted = _submit(client, portal_headers, CLEAN_REQUEST).json()
        response = client.get("/portal/zip-change-request", headers=portal_headers)
        assert response.status_code == 200
        requests = response.json()["requests"]
        assert [r["requestId"] for r in requests] == [submitted["requestId"]]
        assert requests[0]["requestedZipCodes"] == CLEAN_REQUEST


# ── Operator conflict check ──


class TestConflictEndpoint:
    def test_no_conflicts(self, client, portal_headers, basic_headers):
        request_id = _submit(client, portal_headers, CLEAN_REQUEST).json()["requestId"]
        response = client.post(
            "/internal/zip-change-request/conflicts", json={"requestId": request_id}, headers=basic_headers
        )
        assert response.status_code == 200
        body = response.json()
        assert body["conflict"] is False
        assert body["conflictCount"] == 0
        assert body["portalKey"] == "acme"
        assert body["checkedAt"]

    def test_conflicts_listed(self, client, portal_headers, tool_headers):
        request_id = _submit(client, portal_headers, CONFLICTING_REQUEST).json()["requestId"]
        response = client.post(
            "/internal/zip-change-request/conflicts", json={"requestId": request_id}, headers=tool_headers
        )
        body = response.json()
        assert body["conflict"] is True
        assert body["conflictingZipCodes"] == ["75003", "75004"]
        assert body["conflicts"][0]["recordId"] == "recBeta"

    def test_conflict_list_is_capped_but_count_is_total(self, client, portal_headers, basic_headers, airtable):
        # recBeta already holds 75003 and 75004; 23 more rows claim 75003
        for n in range(23):
            airtable.add(f"recRival{n}", f"Rival Roofing {n}", "4. Launched", "75003")
        request_id = _submit(client, portal_headers, CONFLICTING_REQUEST).json()["requestId"]
        response = client.post(
            "/internal/zip-change-request/conflicts", json={"requestId": request_id}, headers=basic_headers
        )
        body = response.json()
        assert body["conflictCount"] == 25
        assert len(body["conflicts"]) == 20
        assert body["conflictingZipCodes"] == ["75003", "75004"]

    def test_registry_failure_is_503(self, client, portal_headers, basic_headers, airtable):
        request_id = _submit(client, portal_headers, CONFLICTING_REQUEST).json()["requestId"]
        airtable.fail_list = True
        response = client.post(
            "/internal/zip-change-request/conflicts", json={"requestId": request_id}, headers=basic_headers
        )
        assert response.status_code == 503
        assert response.json()["reason"] == "fetch_failed"

    def test_unknown_request_is_404(self, client, basic_headers):
        response = client.post(
            "/internal/zip-change-request/conflicts", json={"requestId": "zcr_nope"}, headers=basic_headers
        )
        assert response.status_code == 404


# ── Operator resolve ──


class TestResolveEndpoint:
    URL = "/internal/zip-change-request/resolve"

    def test_approve_updates_store_registry_and_requester(
        self, client, session, portal_headers, basic_headers, airtable, email_outbox
    ):
        request_id = _submit(client, portal_headers, CLEAN_REQUEST).json()["requestId"]
        response = client.post(self.URL, json={"requestId": request_id, "decision": "approve"}, headers=basic_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["updated"] is True
        assert body["status"] == "approved"
        assert body["resolvedBy"] == "ops"
        assert body["targetZipCodes"] == CLEAN_REQUEST
        assert body["registrySync"]["synced"] is True
        assert airtable.patches == [
            ("recAcme", {"fields": {"Target ZIP Codes": ", ".join(CLEAN_REQUEST)}, "typecast": True})
        ]

        session.expire_all()
        assert session.get(Organization, "acme").target_zip_codes == CLEAN_REQUEST
        assert email_outbox[-1]["to"] == ["owner@acmeroofing.com"]
        assert "approved" in email_outbox[-1]["subject"]

    def test_second_resolve_is_409_and_changes_nothing(self, client, session, portal_headers, basic_headers):
        request_id = _submit(client, portal_headers, CLEAN_REQUEST).json()["requestId"]
        client.post(self.URL, json={"requestId": request_id, "decision": "approve"}, headers=basic_headers)

        response = client.post(
            self.URL,
            json={"requestId": request_id, "decision": "reject", "resolutionNotes": "changed my mind"},
            headers=basic_headers,
        )
        assert response.status_code == 409
        body = response.json()
        assert body["updated"] is False
        assert body["reason"] == "already_resolved"
        assert body["status"] == "approved"

        session.expire_all()
        stored = session.get(ZipChangeRequest, request_id)
        assert stored.status == "approved"
        assert stored.resolution_notes is None

    def test_reject_without_notes_is_400(self, client, portal_headers, basic_headers):
        request_id = _submit(client, portal_headers, CLEAN_REQUEST).json()["requestId"]
        response = client.post(self.URL, json={"requestId": request_id, "decision": "reject"}, headers=basic_headers)
        assert response.status_code == 400

    def test_reject_does_not_touch_registry(self, client, portal_headers, basic_headers, airtable):
        request_id = _submit(client, portal_headers, CLEAN_REQUEST).json()["requestId"]
        response = client.post(
            self.URL,
            json={"requestId": request_id, "decision": "reject", "resolutionNotes": "Overlap", "resolvedBy": "sam"},
            headers=basic_headers,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["resolvedBy"] == "sam"
        assert "registrySync" not in response.json()
        assert airtable.patches == []

    def test_conflicting_approve_is_409(self, client, session, portal_headers, tool_headers):
        request_id = _submit(client, portal_headers, CONFLICTING_REQUEST).json()["requestId"]
        response = client.post(self.URL, json={"requestId": request_id, "decision": "approve"}, headers=tool_headers)
        assert response.status_code == 409
        assert response.json()["reason"] == "zip_conflict"
        assert response.json()["conflictingZipCodes"] == ["75003", "75004"]

        session.expire_all()
        assert session.exec(select(ZipChangeRequest)).one().status == "pending"

    def test_registry_sync_failure_is_502_but_approved(self, client, session, portal_headers, basic_headers, airtable):
        request_id = _submit(client, portal_headers, CLEAN_REQUEST).json()["requestId"]
        airtable.fail_patch = True
        response = client.post(self.URL, json={"requestId": request_id, "decision": "approve"}, headers=basic_headers)

        assert response.status_code == 502
        body = response.json()
        assert body["approvedInStore"] is True
        assert body["registrySync"]["reason"] == "update_failed"

        session.expire_all()
        assert session.get(ZipChangeRequest, request_id).status == "approved"
        assert session.get(Organization, "acme").target_zip_codes == CLEAN_REQUEST

    def test_portal_session_cannot_resolve(self, client, portal_headers):
        request_id = _submit(client, portal_headers, CLEAN_REQUEST).json()["requestId"]
        response = client.post(self.URL, json={"requestId": request_id, "decision": "approve"}, headers=portal_headers)
        assert response.status_code == 403

    def test_list_filters_by_status(self, client, portal_headers, basic_headers):
        request_id = _submit(client, portal_headers, CLEAN_REQUEST).json()["requestId"]
        pending = client.get("/internal/zip-change-requests?status=pending", headers=basic_headers).json()
        assert [r["requestId"] for r in pending["requests"]] == [request_id]
        approved = client.get("/internal/zip-change-requests?status=approved&portalKey=acme", headers=basic_headers)
        assert approved.json()["requests"] == []

    def test_status_enum_is_shared_with_the_model(self, client, portal_headers):
        _submit(client, portal_headers, CLEAN_REQUEST)
        assert schemas.ZipChangeStatus is ZipChangeStatus
        listed = client.get("/portal/zip-change-request", headers=portal_headers).json()
        assert listed["requests"][0]["status"] == ZipChangeStatus.PENDING.value
