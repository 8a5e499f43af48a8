"""
Assignee resolution for newly created leads.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.api.schemas.shared import (
    AssignmentConfig,
    ByColumnAssignment,
    RoundRobinAssignment,
)
from app.db.models import ImportRow, Profile

logger = logging.getLogger(__name__)


def load_user_directory(session: Session) -> Dict[str, str]:
    """
    Build a case-insensitive lookup of profile id, display name and email to
    profile id.
    """
    directory: Dict[str, str] = {}
    for profile_id, display_name, email in session.execute(
        select(Profile.id, Profile.display_name, Profile.email)
    ):
        for key in (profile_id, display_name, email):
            if key and key.strip():
                directory.setdefault(key.strip().lower(), profile_id)
    return directory


def count_assigned_rows(session: Session, job_id: str) -> int:
    """Rows of this job that already created a lead (the round-robin position)."""
    return session.execute(
        select(func.count(ImportRow.id)).where(
            ImportRow.import_job_id == job_id,
            ImportRow.action == "created",
        )
    ).scalar() or 0


@dataclass
class AssignmentStats:
    total: int = 0
    assigned: int = 0
    unassigned: int = 0
    by_user: Dict[str, int] = field(default_factory=dict)

    def record(self, user_id: Optional[str]) -> None:
        self.total += 1
        if user_id:
            self.assigned += 1
            self.by_user[user_id] = self.by_user.get(user_id, 0) + 1
        else:
            self.unassigned += 1


class AssignmentResolver:
    """
    Picks an assignee for each created lead.

    Round-robin position is ``already_assigned`` plus the rows assigned by
    this resolver, so a resumed commit continues the rotation.
    """

    def __init__(
        self,
        config: AssignmentConfig,
        user_directory: Optional[Dict[str, str]] = None,
        already_assigned: int = 0,
    ):
        self.config = config
        self.user_directory = user_directory or {}
        self.position = already_assigned
        self.stats = AssignmentStats()

    @property
    def mode(self) -> str:
        return self.config.mode

    def resolve(
        self,
        normalized: Dict[str, Optional[str]],
        raw_data: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        """Return the assignee for the next created row and advance the rotation."""
        user_id: Optional[str] = None

        if isinstance(self.config, RoundRobinAssignment):
            user_ids: List[str] = self.config.round_robin_user_ids
            user_id = user_ids[self.position % len(user_ids)]
        elif isinstance(self.config, ByColumnAssignment):
            user_id = self._resolve_by_column(normalized, raw_data or {})

        self.position += 1
        self.stats.record(user_id)
        return user_id

    def _resolve_by_column(self, normalized: Dict[str, Optional[str]], raw_data: Dict[str, str]) -> Optional[str]:
        if self.config.assignment_column:
            identifier = raw_data.get(self.config.assignment_column)
        else:
            identifier = normalized.get("assigned_to")
        if not identifier or not str(identifier).strip():
            return None
        user_id = self.user_directory.get(str(identifier).strip().lower())
        if user_id is None:
            logger.debug("Assignee %r does not match any user; leaving lead unassigned", identifier)
        return user_id
