"""
In-app notifications for import outcomes.

Delivery (email, push, realtime) belongs to the CRM; the pipeline only
inserts rows into ``notifications``. A notification failure is logged and
never changes the job outcome.
"""
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import Notification

logger = logging.getLogger(__name__)


class Notifier:
    """No-op notifier; subclasses persist or deliver the notification."""

    def import_completed(self, user_id: Optional[str], job_id: str, file_name: str, imported_rows: int) -> None:
        pass

    def import_failed(self, user_id: Optional[str], job_id: str, file_name: str, error_message: str) -> None:
        pass


class DatabaseNotifier(Notifier):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _insert(self, user_id: Optional[str], type_: str, title: str, message: str, payload: Dict[str, Any]) -> None:
        if not user_id:
            return
        try:
            with self._session_factory() as session:
                session.add(
                    Notification(user_id=user_id, type=type_, title=title, message=message, payload=payload)
                )
                session.commit()
        except SQLAlchemyError as e:
            logger.warning("Could not record %s notification for user %s: %s", type_, user_id, e)

    def import_completed(self, user_id: Optional[str], job_id: str, file_name: str, imported_rows: int) -> None:
        self._insert(
            user_id,
            "import_completed",
            "Import terminé",
            f"{imported_rows} leads importés depuis {file_name}",
            {"import_job_id": job_id, "imported_rows": imported_rows},
        )

    def import_failed(self, user_id: Optional[str], job_id: str, file_name: str, error_message: str) -> None:
        self._insert(
            user_id,
            "import_failed",
            "Import échoué",
            f"L'import de {file_name} a échoué : {error_message}",
            {"import_job_id": job_id},
        )
