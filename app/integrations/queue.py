"""
QStash-compatible HTTP task queue integration.

Work units are published as JSON to ``{qstash_url}/v2/publish/{destination}``;
the queue calls the destination back with at-least-once delivery, retries
with exponential backoff, and signs each callback with a JWT in the
``Upstash-Signature`` header.
"""
import base64
import hashlib
import json
import logging
from typing import Any, Dict, Optional

import requests
from jose import JWTError, jwt

from app.core.config import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Upstash-Signature"
SIGNATURE_ISSUER = "Upstash"
DEFAULT_PUBLISH_TIMEOUT = 10  # seconds

JOB_ID_HEADER = "X-Import-Job-Id"
JOB_TYPE_HEADER = "X-Job-Type"


class QueueError(Exception):
    """Base exception for task queue operations."""
    pass


class QueuePublishError(QueueError):
    """Raised when a message cannot be handed to the queue."""
    pass


class SignatureVerificationError(QueueError):
    """Raised when a queue callback is not authentic."""
    pass


class QueueClient:
    """
    Publishes job messages to the task queue.

    Created once at process start and passed to the dispatcher.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        retries: int = 3,
        timeout: str = "5m",
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.retries = retries
        self.timeout = timeout
        self.http = http or requests.Session()

    def publish_json(
        self,
        destination_url: str,
        payload: Dict[str, Any],
        *,
        forward_headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Publish a JSON payload for delivery to ``destination_url``.

        Returns:
            The queue's message id

        Raises:
            QueuePublishError: If the queue rejects or cannot be reached
        """
        if not self.token:
            raise QueuePublishError("QSTASH_TOKEN is not configured")

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(self.retries),
            "Upstash-Timeout": self.timeout,
        }
        for name, value in (forward_headers or {}).items():
            headers[f"Upstash-Forward-{name}"] = value

        url = f"{self.base_url}/v2/publish/{destination_url}"
        try:
            response = self.http.post(
                url,
                data=json.dumps(payload),
                headers=headers,
                timeout=DEFAULT_PUBLISH_TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Queue publish to %s failed: %s", destination_url, e)
            raise QueuePublishError(f"Failed to publish job message: {e}") from e

        try:
            message_id = response.json().get("messageId", "")
        except ValueError:
            message_id = ""
        logger.info("Published message %s to %s", message_id or "<unknown>", destination_url)
        return message_id


def build_queue_client() -> QueueClient:
    return QueueClient(
        settings.qstash_url,
        settings.qstash_token,
        retries=settings.qstash_retries,
        timeout=settings.qstash_timeout,
    )


def _body_hash(body: bytes) -> str:
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _verify_with_key(token: str, key: str, body: bytes, url: Optional[str]) -> None:
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["HS256"],
            issuer=SIGNATURE_ISSUER,
            options={"verify_aud": False},
        )
    except JWTError as e:
        raise SignatureVerificationError(f"Invalid signature: {e}") from e

    if url is not None and claims.get("sub") != url:
        raise SignatureVerificationError("Signature was issued for a different URL")

    expected = _body_hash(body)
    if (claims.get("body") or "").rstrip("=") != expected:
        raise SignatureVerificationError("Body hash does not match signature")


def verify_signature(
    body: bytes,
    signature: Optional[str],
    url: Optional[str] = None,
    *,
    current_key: Optional[str] = None,
    next_key: Optional[str] = None,
) -> None:
    """
    Verify an ``Upstash-Signature`` JWT against the raw request body.

    The current signing key is tried first, then the next one (keys are
    rotated by promoting next to current).

    Raises:
        SignatureVerificationError: If neither key validates the signature
    """
    current_key = current_key if current_key is not None else settings.qstash_current_signing_key
    next_key = next_key if next_key is not None else settings.qstash_next_signing_key

    if not signature:
        raise SignatureVerificationError(f"Missing {SIGNATURE_HEADER} header")

    keys = [key for key in (current_key, next_key) if key]
    if not keys:
        raise SignatureVerificationError("No queue signing keys configured")

    last_error: Optional[SignatureVerificationError] = None
    for key in keys:
        try:
            _verify_with_key(signature, key, body, url)
            return
        except SignatureVerificationError as e:
            last_error = e
    raise last_error
