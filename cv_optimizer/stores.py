"""Persistence collaborators: the stored CV and application records."""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import PersistenceError
from .models import CVDocument, MatchAnalysis

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StoredCV(BaseModel):
    id: str
    cv: CVDocument
    created_at: datetime = Field(default_factory=_now)


class ApplicationRecord(BaseModel):
    id: str
    base_cv: CVDocument
    job_description: str
    job_title: str
    employer: str
    optimized_cv: Optional[CVDocument] = None
    analysis: Optional[MatchAnalysis] = None
    status: Literal["draft", "completed"] = "draft"
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class CVStore(ABC):
    @abstractmethod
    async def fetch_current_cv(self) -> CVDocument:
        """Return the latest stored CV, or an empty default."""

    @abstractmethod
    async def persist_cv(self, cv: CVDocument) -> StoredCV:
        """Store ``cv`` as the latest version; raises :class:`PersistenceError`."""


class ApplicationStore(ABC):
    @abstractmethod
    async def create_application_record(
        self, cv: CVDocument, job_description: str, job_title: str, employer: str
    ) -> str:
        """Create a draft application and return its id."""

    @abstractmethod
    async def update_application_record(
        self, application_id: str, optimized_cv: CVDocument, final_analysis: MatchAnalysis
    ) -> None:
        """Attach the optimized CV and its final analysis; marks the record completed."""

    @abstractmethod
    async def get_application(self, application_id: str) -> ApplicationRecord:
        ...

    @abstractmethod
    async def list_applications(self) -> List[ApplicationRecord]:
        """All application records, newest first."""

    @abstractmethod
    async def delete_application(self, application_id: str) -> None:
        ...


class InMemoryStore(CVStore, ApplicationStore):
    """Process-local store used by the HTTP app and the tests."""

    def __init__(self) -> None:
        self._cvs: List[StoredCV] = []
        self._applications: Dict[str, ApplicationRecord] = {}

    async def fetch_current_cv(self) -> CVDocument:
        if not self._cvs:
            return CVDocument()
        return self._cvs[-1].cv.model_copy(deep=True)

    async def persist_cv(self, cv: CVDocument) -> StoredCV:
        stored = StoredCV(id=uuid.uuid4().hex, cv=cv.model_copy(deep=True))
        self._cvs.append(stored)
        logger.info("Stored CV %s", stored.id)
        return stored

    async def create_application_record(
        self, cv: CVDocument, job_description: str, job_title: str, employer: str
    ) -> str:
        record = ApplicationRecord(
            id=uuid.uuid4().hex,
            base_cv=cv.model_copy(deep=True),
            job_description=job_description,
            job_title=job_title,
            employer=employer,
        )
        self._applications[record.id] = record
        logger.info("Created application %s for %r at %r", record.id, job_title, employer)
        return record.id

    async def update_application_record(
        self, application_id: str, optimized_cv: CVDocument, final_analysis: MatchAnalysis
    ) -> None:
        record = self._applications.get(application_id)
        if record is None:
            raise PersistenceError(f"application {application_id} does not exist")
        self._applications[application_id] = record.model_copy(
            update={
                "optimized_cv": optimized_cv.model_copy(deep=True),
                "analysis": final_analysis,
                "status": "completed",
                "updated_at": _now(),
            }
        )

    async def get_application(self, application_id: str) -> ApplicationRecord:
        record = self._applications.get(application_id)
        if record is None:
            raise PersistenceError(f"application {application_id} does not exist")
        return record

    async def list_applications(self) -> List[ApplicationRecord]:
        return sorted(self._applications.values(), key=lambda record: record.created_at, reverse=True)

    async def delete_application(self, application_id: str) -> None:
        if self._applications.pop(application_id, None) is None:
            raise PersistenceError(f"application {application_id} does not exist")
        logger.info("Deleted application %s", application_id)
