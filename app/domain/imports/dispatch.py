"""
Dispatchers hand the parse and commit work units to whatever runs them.

``InlineDispatcher`` runs them in this process (synchronously, or on a
thread pool when one is given); ``QueueDispatcher`` publishes them to the
HTTP task queue, which calls ``/tasks/import/{parse,commit}`` back.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future
from typing import TYPE_CHECKING, Optional

from app.api.schemas.shared import CommitJobMessage, ParseJobMessage
from app.core.config import settings
from app.integrations.queue import JOB_ID_HEADER, JOB_TYPE_HEADER, QueueClient

if TYPE_CHECKING:
    from app.domain.imports.orchestrator import ImportOrchestrator

logger = logging.getLogger(__name__)

PARSE_TASK_PATH = "/tasks/import/parse"
COMMIT_TASK_PATH = "/tasks/import/commit"


class JobDispatcher(ABC):
    @abstractmethod
    def dispatch_parse(self, message: ParseJobMessage) -> Optional[str]:
        """Schedule a parse work unit; returns a message id when there is one."""

    @abstractmethod
    def dispatch_commit(self, message: CommitJobMessage) -> Optional[str]:
        """Schedule a commit work unit; returns a message id when there is one."""


class InlineDispatcher(JobDispatcher):
    """Runs work units in-process. Must be bound to an orchestrator before use."""

    def __init__(self, executor: Optional[Executor] = None):
        self.executor = executor
        self.orchestrator: Optional["ImportOrchestrator"] = None

    def bind(self, orchestrator: "ImportOrchestrator") -> None:
        self.orchestrator = orchestrator

    def _require_orchestrator(self) -> "ImportOrchestrator":
        if self.orchestrator is None:
            raise RuntimeError("InlineDispatcher is not bound to an orchestrator")
        return self.orchestrator

    def _run(self, label: str, fn, *args) -> None:
        if self.executor is None:
            fn(*args)
            return
        future = self.executor.submit(fn, *args)
        future.add_done_callback(lambda f: _log_background_failure(label, f))

    def dispatch_parse(self, message: ParseJobMessage) -> Optional[str]:
        orchestrator = self._require_orchestrator()
        self._run(f"parse {message.import_job_id}", orchestrator.run_parse, message.import_job_id)
        return None

    def dispatch_commit(self, message: CommitJobMessage) -> Optional[str]:
        orchestrator = self._require_orchestrator()
        self._run(f"commit {message.import_job_id}", orchestrator.run_commit, message)
        return None


def _log_background_failure(label: str, future: Future) -> None:
    error = future.exception()
    if error is not None:
        # The job itself was already marked failed by the orchestrator.
        logger.error("Background import work unit %s failed: %s", label, error)


class QueueDispatcher(JobDispatcher):
    """Publishes work units to the task queue."""

    def __init__(self, client: QueueClient, base_url: Optional[str] = None):
        self.client = client
        self.base_url = (base_url or settings.app_base_url).rstrip("/")

    def dispatch_parse(self, message: ParseJobMessage) -> Optional[str]:
        return self.client.publish_json(
            f"{self.base_url}{PARSE_TASK_PATH}",
            message.model_dump(mode="json", by_alias=True),
            forward_headers={JOB_ID_HEADER: message.import_job_id, JOB_TYPE_HEADER: "parse"},
        )

    def dispatch_commit(self, message: CommitJobMessage) -> Optional[str]:
        return self.client.publish_json(
            f"{self.base_url}{COMMIT_TASK_PATH}",
            message.model_dump(mode="json", by_alias=True),
            forward_headers={JOB_ID_HEADER: message.import_job_id, JOB_TYPE_HEADER: "commit"},
        )


def build_dispatcher(
    mode: Optional[str] = None,
    queue_client: Optional[QueueClient] = None,
    executor: Optional[Executor] = None,
) -> JobDispatcher:
    mode = mode or settings.import_dispatch_mode
    if mode == "queue":
        if queue_client is None:
            raise ValueError("Queue dispatch requires a QueueClient")
        return QueueDispatcher(queue_client)
    if mode == "inline":
        return InlineDispatcher(executor)
    raise ValueError(f"Unknown import dispatch mode '{mode}'")
