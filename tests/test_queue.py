"""
Tests for the task queue client, callback signature checks and dispatchers.
"""
import base64
import hashlib
import json
import time

import pytest
import requests
from jose import jwt

from app.api.schemas.shared import CommitJobMessage, ParseJobMessage
from app.domain.imports.dispatch import InlineDispatcher, QueueDispatcher, build_dispatcher
from app.integrations.queue import (
    QueueClient,
    QueuePublishError,
    SignatureVerificationError,
    verify_signature,
)

CURRENT_KEY = "sig_current_key"
NEXT_KEY = "sig_next_key"


def sign(body: bytes, key: str, url: str = "https://api.example.com/tasks/import/parse", **overrides):
    now = int(time.time())
    claims = {
        "iss": "Upstash",
        "sub": url,
        "iat": now,
        "nbf": now,
        "exp": now + 300,
        "body": base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("="),
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="HS256")


class TestVerifySignature:
    body = b'{"importJobId": "job-1"}'

    def test_valid_with_current_key(self):
        verify_signature(self.body, sign(self.body, CURRENT_KEY), current_key=CURRENT_KEY, next_key=NEXT_KEY)

    def test_valid_with_next_key(self):
        verify_signature(self.body, sign(self.body, NEXT_KEY), current_key=CURRENT_KEY, next_key=NEXT_KEY)

    def test_url_checked_when_given(self):
        token = sign(self.body, CURRENT_KEY)
        verify_signature(
            self.body, token, "https://api.example.com/tasks/import/parse", current_key=CURRENT_KEY, next_key=""
        )
        with pytest.raises(SignatureVerificationError):
            verify_signature(
                self.body, token, "https://evil.example.com/", current_key=CURRENT_KEY, next_key=""
            )

    def test_tampered_body(self):
        token = sign(self.body, CURRENT_KEY)
        with pytest.raises(SignatureVerificationError):
            verify_signature(b'{"importJobId": "job-2"}', token, current_key=CURRENT_KEY, next_key=NEXT_KEY)

    def test_wrong_key(self):
        with pytest.raises(SignatureVerificationError):
            verify_signature(self.body, sign(self.body, "other"), current_key=CURRENT_KEY, next_key=NEXT_KEY)

    def test_wrong_issuer(self):
        token = sign(self.body, CURRENT_KEY, iss="Someone")
        with pytest.raises(SignatureVerificationError):
            verify_signature(self.body, token, current_key=CURRENT_KEY, next_key=NEXT_KEY)

    def test_expired(self):
        token = sign(self.body, CURRENT_KEY, exp=int(time.time()) - 10)
        with pytest.raises(SignatureVerificationError):
            verify_signature(self.body, token, current_key=CURRENT_KEY, next_key=NEXT_KEY)

    def test_missing_header(self):
        with pytest.raises(SignatureVerificationError):
            verify_signature(self.body, None, current_key=CURRENT_KEY, next_key=NEXT_KEY)

    def test_no_keys_configured(self):
        with pytest.raises(SignatureVerificationError):
            verify_signature(self.body, sign(self.body, CURRENT_KEY), current_key="", next_key="")


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse(payload={"messageId": "msg_123"})
        self.error = error
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append({"url": url, "data": data, "headers": headers})
        if self.error:
            raise self.error
        return self.response


class TestQueueClient:
    def test_publish(self):
        http = FakeHttp()
        client = QueueClient("https://qstash.example.com/", "token-1", retries=5, http=http)
        message_id = client.publish_json(
            "https://api.example.com/tasks/import/parse",
            {"importJobId": "job-1"},
            forward_headers={"X-Import-Job-Id": "job-1"},
        )

        assert message_id == "msg_123"
        call = http.calls[0]
        assert call["url"] == "https://qstash.example.com/v2/publish/https://api.example.com/tasks/import/parse"
        assert json.loads(call["data"]) == {"importJobId": "job-1"}
        assert call["headers"]["Authorization"] == "Bearer token-1"
        assert call["headers"]["Upstash-Retries"] == "5"
        assert call["headers"]["Upstash-Forward-X-Import-Job-Id"] == "job-1"

    def test_http_error(self):
        client = QueueClient("https://q", "token", http=FakeHttp(response=FakeResponse(status_code=500)))
        with pytest.raises(QueuePublishError):
            client.publish_json("https://dest", {})

    def test_connection_error(self):
        client = QueueClient("https://q", "token", http=FakeHttp(error=requests.ConnectionError("down")))
        with pytest.raises(QueuePublishError):
            client.publish_json("https://dest", {})

    def test_missing_token(self):
        with pytest.raises(QueuePublishError):
            QueueClient("https://q", "", http=FakeHttp()).publish_json("https://dest", {})


class TestDispatchers:
    def test_queue_dispatcher_targets_task_endpoints(self):
        http = FakeHttp()
        dispatcher = QueueDispatcher(QueueClient("https://q", "token", http=http), "https://api.example.com/")

        assert dispatcher.dispatch_parse(ParseJobMessage(import_job_id="job-1")) == "msg_123"
        dispatcher.dispatch_commit(CommitJobMessage(import_job_id="job-1"))

        assert http.calls[0]["url"].endswith("/v2/publish/https://api.example.com/tasks/import/parse")
        assert http.calls[1]["url"].endswith("/v2/publish/https://api.example.com/tasks/import/commit")
        assert http.calls[1]["headers"]["Upstash-Forward-X-Job-Type"] == "commit"
        body = json.loads(http.calls[1]["data"])
        assert body["importJobId"] == "job-1"
        assert body["duplicateConfig"]["strategy"] == "skip"
        assert body["assignmentConfig"] == {"mode": "none"}

    def test_unbound_inline_dispatcher(self):
        with pytest.raises(RuntimeError):
            InlineDispatcher().dispatch_parse(ParseJobMessage(import_job_id="job-1"))

    def test_build_dispatcher(self):
        assert isinstance(build_dispatcher("inline"), InlineDispatcher)
        with pytest.raises(ValueError):
            build_dispatcher("queue")
        with pytest.raises(ValueError):
            build_dispatcher("carrier-pigeon")
