"""
Tests for the HTTP surface: import endpoints and queue callbacks.
"""
import csv
import io
import json
import time

import pytest
from jose import jwt

from app.core.config import settings
from app.db.models import ImportJob, Lead
from app.integrations.queue import SIGNATURE_HEADER, _body_hash

LEADS_CSV = (
    "Prénom,Email\n"
    "Anne,anne@exemple.fr\n"
    "Bruno,\n"
    "Chloé,chloe@exemple.fr\n"
).encode("utf-8")


def upload(client, content=LEADS_CSV, file_name="leads.csv", created_by="user-a"):
    response = client.post(
        "/imports/upload",
        files={"file": (file_name, content, "text/csv")},
        data={"created_by": created_by},
    )
    assert response.status_code == 200, response.text
    return response.json()["importJobId"]


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Lead Import API", "version": "1.0.0"}
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["service"] == "lead-import-api"


class TestCreateImport:
    def test_create_with_existing_storage_path(self, client, db):
        response = client.post(
            "/imports",
            json={"fileName": "leads.csv", "storagePath": "imports/user-a/leads.csv", "createdBy": "user-a"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["storagePath"] == "imports/user-a/leads.csv"
        assert body["uploadUrl"] is None

        job = db.get(ImportJob, body["importJobId"])
        assert (job.status, job.file_type, job.created_by) == ("pending", "csv", "user-a")

    def test_local_storage_allocates_path(self, client, monkeypatch):
        monkeypatch.setattr(settings, "storage_provider", "local")
        body = client.post("/imports", json={"fileName": "Mes leads.xlsx", "createdBy": "user-a"}).json()
        assert body["storagePath"].startswith("imports/user-a/")
        assert body["storagePath"].endswith("_Mes_leads.xlsx")
        assert body["uploadUrl"] is None

    def test_unsupported_file_type(self, client):
        response = client.post("/imports", json={"fileName": "leads.pdf", "storagePath": "x"})
        assert response.status_code == 400
        assert "Unsupported file type" in response.json()["detail"]

    def test_file_too_large(self, client):
        too_big = (settings.upload_max_file_size_mb + 1) * 1024 * 1024
        response = client.post(
            "/imports", json={"fileName": "leads.csv", "fileSize": too_big, "storagePath": "x"}
        )
        assert response.status_code == 413

    def test_same_file_twice_conflicts(self, client):
        payload = {"fileName": "leads.csv", "fileHash": "abc123", "createdBy": "user-a", "storagePath": "x"}
        assert client.post("/imports", json=payload).status_code == 200
        response = client.post("/imports", json=payload)
        assert response.status_code == 409


class TestUploadAndRun:
    def test_upload_stores_file_and_hash(self, client, db, file_source):
        job_id = upload(client)
        job = db.get(ImportJob, job_id)
        assert job.file_size == len(LEADS_CSV)
        assert len(job.file_hash) == 64
        assert file_source.files[job.storage_path] == LEADS_CSV

    def test_upload_same_content_twice_conflicts(self, client):
        upload(client)
        response = client.post(
            "/imports/upload",
            files={"file": ("leads.csv", LEADS_CSV, "text/csv")},
            data={"created_by": "user-a"},
        )
        assert response.status_code == 409

    def test_full_flow(self, client, db):
        job_id = upload(client)

        detected = client.post(f"/imports/{job_id}/mapping/detect")
        assert detected.status_code == 200
        body = detected.json()
        assert body["headers"] == ["Prénom", "Email"]
        assert [m["targetField"] for m in body["mappings"]] == ["first_name", "email"]
        assert body["mappings"][0]["sampleValues"] == ["Anne", "Bruno", "Chloé"]
        assert body["required"]["hasContactField"] is True
        assert body["summary"]["mappedColumns"] == 2

        options = client.put(
            f"/imports/{job_id}/options",
            json={"assignment": {"mode": "round_robin", "roundRobinUserIds": ["user-b"]}},
        )
        assert options.status_code == 200

        started = client.post(f"/imports/{job_id}/start")
        assert started.status_code == 200
        assert started.json()["status"] == "completed"

        status = client.get(f"/imports/{job_id}/status").json()
        assert status["status"] == "completed"
        assert status["totalRows"] == 3
        assert status["validRows"] == 2
        assert status["invalidRows"] == 1
        assert status["importedRows"] == 2
        assert status["completedAt"] is not None

        assert {lead.assigned_to for lead in db.query(Lead)} == {"user-b"}

        report = client.get(f"/imports/{job_id}/error-report")
        assert report.status_code == 200
        assert report.headers["content-type"].startswith("text/csv")
        assert 'filename="leads_errors.csv"' in report.headers["content-disposition"]
        assert report.headers["x-row-count"] == "1"
        rows = list(csv.reader(io.StringIO(report.text, newline="")))
        assert rows[0] == ["row_number", "errors", "Prénom", "Email"]
        assert rows[1][0] == "2"
        assert rows[1][1].startswith("contact: No contact field")
        assert rows[1][2:] == ["Bruno", ""]

        again = client.post(f"/imports/{job_id}/start")
        assert again.status_code == 400

    def test_start_without_mapping(self, client):
        job_id = upload(client)
        response = client.post(f"/imports/{job_id}/start")
        assert response.status_code == 400
        assert "mapping" in response.json()["detail"].lower()

    def test_mapping_with_duplicate_targets_rejected(self, client):
        job_id = upload(client)
        response = client.put(
            f"/imports/{job_id}/mapping",
            json={
                "mappings": [
                    {"sourceColumn": "Prénom", "sourceIndex": 0, "targetField": "email"},
                    {"sourceColumn": "Email", "sourceIndex": 1, "targetField": "email"},
                ]
            },
        )
        assert response.status_code == 400

    def test_unknown_target_field_is_unprocessable(self, client):
        job_id = upload(client)
        response = client.put(
            f"/imports/{job_id}/mapping",
            json={"mappings": [{"sourceColumn": "Email", "sourceIndex": 1, "targetField": "fax"}]},
        )
        assert response.status_code == 422

    def test_error_report_missing_when_all_rows_valid(self, client):
        job_id = upload(client, content=b"Email\nanne@exemple.fr\n")
        client.post(f"/imports/{job_id}/mapping/detect")
        client.post(f"/imports/{job_id}/start")
        assert client.get(f"/imports/{job_id}/error-report").status_code == 404


class TestJobManagement:
    def test_unknown_job(self, client):
        assert client.get("/imports/missing/status").status_code == 404
        assert client.post("/imports/missing/start").status_code == 404
        assert client.post("/imports/missing/cancel").status_code == 404

    def test_cancel_then_delete(self, client):
        job_id = upload(client)

        cancelled = client.post(f"/imports/{job_id}/cancel")
        assert cancelled.json()["status"] == "cancelled"
        assert client.post(f"/imports/{job_id}/cancel").status_code == 400
        assert client.post(f"/imports/{job_id}/resume").status_code == 400

        assert client.delete(f"/imports/{job_id}").status_code == 200
        assert client.get(f"/imports/{job_id}/status").status_code == 404

    def test_list_jobs(self, client):
        upload(client, content=b"Email\na@x.fr\n", created_by="user-a")
        upload(client, content=b"Email\nb@x.fr\n", created_by="user-b")

        body = client.get("/imports", params={"created_by": "user-b"}).json()
        assert body["totalCount"] == 1
        assert body["jobs"][0]["createdBy"] == "user-b"
        assert client.get("/imports", params={"limit": 0}).status_code == 422


@pytest.fixture
def signing_keys(monkeypatch):
    monkeypatch.setattr(settings, "qstash_current_signing_key", "current-key")
    monkeypatch.setattr(settings, "qstash_next_signing_key", "next-key")


def signed_post(client, path, payload, key="current-key"):
    body = json.dumps(payload).encode("utf-8")
    now = int(time.time())
    token = jwt.encode(
        {
            "iss": "Upstash",
            "sub": f"http://testserver{path}",
            "iat": now,
            "nbf": now,
            "exp": now + 300,
            "body": _body_hash(body),
        },
        key,
        algorithm="HS256",
    )
    return client.post(
        path,
        content=body,
        headers={SIGNATURE_HEADER: token, "Content-Type": "application/json"},
    )


class TestTaskCallbacks:
    def test_unsigned_request_rejected(self, client, signing_keys):
        response = client.post("/tasks/import/parse", json={"importJobId": "job-1"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid signature"

    def test_wrong_key_rejected(self, client, signing_keys):
        response = signed_post(client, "/tasks/import/parse", {"importJobId": "job-1"}, key="stolen")
        assert response.status_code == 401

    def test_parse_callback_runs_job(self, client, db, make_job, signing_keys):
        job = make_job(
            LEADS_CSV,
            headers=["Prénom", "Email"],
            targets={"Prénom": "first_name", "Email": "email"},
            status="parsing",
        )

        response = signed_post(client, "/tasks/import/parse", {"importJobId": job.id}, key="next-key")
        assert response.status_code == 200
        assert response.json() == {"success": True, "importJobId": job.id, "totalRows": 3, "validRows": 2}

        db.expire_all()
        assert db.get(ImportJob, job.id).status == "completed"

    def test_commit_callback_for_finished_job_is_noop(self, client, make_job, signing_keys):
        job = make_job(LEADS_CSV, status="completed")
        response = signed_post(client, "/tasks/import/commit", {"importJobId": job.id})
        assert response.status_code == 200
        assert response.json()["completed"] is False

    def test_unknown_job_acknowledged(self, client, signing_keys):
        response = signed_post(client, "/tasks/import/parse", {"importJobId": "missing"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_malformed_message_acknowledged(self, client, signing_keys):
        response = signed_post(client, "/tasks/import/commit", {"jobId": "x"})
        assert response.status_code == 200
        assert response.json() == {"success": False, "error": "Malformed message"}

    def test_failing_work_unit_returns_500(self, client, make_job, signing_keys):
        job = make_job(
            LEADS_CSV, storage_path="imports/missing.csv", headers=["Email"], targets={"Email": "email"}, status="parsing"
        )
        response = signed_post(client, "/tasks/import/parse", {"importJobId": job.id})
        assert response.status_code == 500
