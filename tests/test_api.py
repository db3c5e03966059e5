API = "/api/v1"


class TestAuthAndHealth:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_identity_required(self, client):
        assert client.get(f"{API}/containers/statistics").status_code == 401

    def test_container_routes_need_elevated_role(self, client):
        r = client.get(f"{API}/containers/statistics", headers={"X-User-Id": "u1", "X-User-Role": "staff"})
        assert r.status_code == 403


class TestContainerRoutes:
    def test_initialize_is_idempotent(self, client, make_employee, admin_headers):
        make_employee("E42")
        r = client.post(f"{API}/containers/E42/initialize", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["created"] is True

        r = client.post(f"{API}/containers/E42/initialize", headers=admin_headers)
        assert r.json()["created"] is False
        assert r.json()["success"] is True

    def test_unknown_employee(self, client, admin_headers):
        r = client.post(f"{API}/containers/nobody/initialize", headers=admin_headers)
        assert r.status_code == 404

    def test_health_and_repair(self, client, make_employee, admin_headers, tmp_storage):
        employee = make_employee("E7")
        client.post(f"{API}/containers/E7/initialize", headers=admin_headers)
        photos = tmp_storage / "private" / "containers" / f"employee-{employee.id}" / "photos"
        photos.rmdir()

        r = client.get(f"{API}/containers/E7/health", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["status"] == "critical"

        r = client.post(f"{API}/containers/E7/repair", headers=admin_headers)
        assert r.json()["success"] is True
        assert "Recreated missing directory: photos" in r.json()["repairs_made"]

        r = client.get(f"{API}/containers/E7/health", headers=admin_headers)
        assert r.json()["status"] == "healthy"
        assert r.json()["score"] == 100

    def test_rebuild(self, client, make_employee, admin_headers):
        make_employee("E8")
        client.post(f"{API}/containers/E8/initialize", headers=admin_headers)
        r = client.post(f"{API}/containers/E8/rebuild", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["archived_to"].startswith("archived/containers/")

    def test_health_check_batch(self, client, make_employee, admin_headers):
        make_employee("E1")
        make_employee("E2")
        client.post(f"{API}/containers/E1/initialize", headers=admin_headers)

        r = client.post(f"{API}/containers/health-check", json={}, headers=admin_headers)
        data = r.json()
        assert data["total_checked"] == 2
        assert data["healthy"] == 1
        assert data["errors"] == 1
        assert data["failed"] is True

    def test_bulk_dry_run_then_create(self, client, make_employee, admin_headers):
        make_employee("E1")
        make_employee("E2")

        r = client.post(f"{API}/containers/bulk", json={"action": "create", "dry_run": True}, headers=admin_headers)
        assert r.json()["successful"] == 2
        assert client.get(f"{API}/containers/statistics", headers=admin_headers).json()["containers"]["with_containers"] == 0

        r = client.post(f"{API}/containers/bulk", json={"action": "create", "employee_ids": ["E1"]}, headers=admin_headers)
        data = r.json()
        assert data["processed"] == 1
        assert data["success_rate"] == 100.0
        assert data["run_failed"] is False
        assert data["details"][0]["employee_id"] == "E1"

    def test_bulk_rejects_unknown_action(self, client, admin_headers):
        r = client.post(f"{API}/containers/bulk", json={"action": "shred"}, headers=admin_headers)
        assert r.status_code == 400


class TestFileRoutes:
    def _upload(self, client, headers, content, filename="cert.pdf", category="certificates", mime="application/pdf"):
        return client.post(
            f"{API}/employees/E42/files",
            files={"file": (filename, content, mime)},
            data={"category": category, "expiry_date": "2030-01-01"},
            headers=headers,
        )

    def test_upload_download_delete(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        content = pdf_bytes("E42 certificate")

        r = self._upload(client, admin_headers, content)
        assert r.status_code == 201
        data = r.json()
        assert data["version_number"] == 1
        assert data["status"] == "stored"
        assert data["employee_id"] == "E42"
        assert data["validity_status"] == "valid"
        assert data["is_latest_version"] is True
        assert len(data["content_hash"]) == 64

        r = client.get(f"{API}/files/{data['id']}/download", headers=admin_headers)
        assert r.status_code == 200
        assert r.content == content
        assert r.headers["content-type"] == "application/pdf"

        r = client.get(f"{API}/files/{data['id']}/verify", headers=admin_headers)
        assert r.json()["verified"] is True

        r = client.request("DELETE", f"{API}/files/{data['id']}", json={"reason": "expired"}, headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["status"] == "deleted"

        r = client.get(f"{API}/files/{data['id']}/download", headers=admin_headers)
        assert r.status_code == 404

    def test_duplicate_upload_conflict(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        content = pdf_bytes("same")
        self._upload(client, admin_headers, content)

        r = self._upload(client, admin_headers, content, filename="again.pdf")
        assert r.status_code == 409
        assert r.json()["existing_version"] == 1

    def test_rejected_uploads(self, client, make_employee, admin_headers):
        make_employee("E42")
        r = self._upload(client, admin_headers, b"MZ\x90\x00payload", filename="cv.pdf")
        assert r.status_code == 400
        assert r.json()["code"] == "signature"

        r = self._upload(client, admin_headers, b"#!/bin/sh", filename="run.sh", mime="text/x-sh")
        assert r.status_code == 415

    def test_upload_normalises_datetime_issue_date(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        r = client.post(
            f"{API}/employees/E42/files",
            files={"file": ("cert.pdf", pdf_bytes("dated"), "application/pdf")},
            data={"category": "certificates", "issue_date": "2024-05-01T10:00:00"},
            headers=admin_headers,
        )
        assert r.status_code == 201
        assert r.json()["issue_date"] == "2024-05-01"

        r = client.get(f"{API}/employees/E42/files/certificates/versions", headers=admin_headers)
        assert r.status_code == 200
        assert [v["issue_date"] for v in r.json()] == ["2024-05-01"]

    def test_upload_rejects_unparseable_date(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        r = client.post(
            f"{API}/employees/E42/files",
            files={"file": ("cert.pdf", pdf_bytes("dated"), "application/pdf")},
            data={"category": "certificates", "expiry_date": "next tuesday"},
            headers=admin_headers,
        )
        assert r.status_code == 400
        assert r.json()["code"] == "date"

        r = client.get(f"{API}/employees/E42/files/certificates/versions", headers=admin_headers)
        assert r.json() == []

    def test_versions_listing(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        self._upload(client, admin_headers, pdf_bytes("one"))
        self._upload(client, admin_headers, pdf_bytes("two"))

        r = client.get(f"{API}/employees/E42/files/certificates/versions", headers=admin_headers)
        assert [v["version_number"] for v in r.json()] == [2, 1]
        assert [v["is_latest_version"] for v in r.json()] == [True, False]

    def test_stranger_cannot_download(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        record_id = self._upload(client, admin_headers, pdf_bytes()).json()["id"]
        stranger = {"X-User-Id": "x", "X-User-Role": "staff", "X-User-Email": "x@example.com"}

        assert client.get(f"{API}/files/{record_id}/download", headers=stranger).status_code == 403
        assert client.request("DELETE", f"{API}/files/{record_id}", headers=stranger).status_code == 403
        assert client.post(f"{API}/files/{record_id}/link", headers=stranger).status_code == 403
        assert client.get(f"{API}/employees/E42/files/certificates/versions", headers=stranger).json() == []

    def test_owner_downloads_own_file(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42", email="e42@example.com")
        record_id = self._upload(client, admin_headers, pdf_bytes()).json()["id"]
        owner = {"X-User-Id": "e42", "X-User-Role": "staff", "X-User-Email": "e42@example.com"}

        assert client.get(f"{API}/files/{record_id}/download", headers=owner).status_code == 200
        assert client.request("DELETE", f"{API}/files/{record_id}", headers=owner).status_code == 403

    def test_secure_link_is_single_use(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        content = pdf_bytes()
        record_id = self._upload(client, admin_headers, content).json()["id"]

        r = client.post(f"{API}/files/{record_id}/link", json={"ttl_minutes": 5}, headers=admin_headers)
        assert r.status_code == 200
        url = r.json()["url"]
        assert url.startswith(f"{API}/files/secure/")

        r = client.get(url)
        assert r.status_code == 200
        assert r.content == content

        r = client.get(url)
        assert r.status_code == 410
        assert r.json()["reason"] == "revoked"

    def test_unknown_secure_token(self, client):
        r = client.get(f"{API}/files/secure/not-a-token")
        assert r.status_code == 404
        assert r.json()["reason"] == "not_found"

    def test_backup_requires_elevated_role(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        record_id = self._upload(client, admin_headers, pdf_bytes()).json()["id"]

        r = client.post(f"{API}/files/{record_id}/backup", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["backup_path"].startswith("backups/")

        r = client.post(f"{API}/files/{record_id}/backup", headers={"X-User-Id": "u", "X-User-Role": "staff"})
        assert r.status_code == 403

    def test_statistics(self, client, make_employee, admin_headers, pdf_bytes):
        make_employee("E42")
        self._upload(client, admin_headers, pdf_bytes())
        data = client.get(f"{API}/containers/statistics", headers=admin_headers).json()
        assert data["containers"]["with_containers"] == 1
        assert data["files"]["total_files"] == 1
