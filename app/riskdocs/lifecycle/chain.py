"""
Revision chain manager.

A lineage is every Document sharing one `lineage_id`, minus discarded drafts. At any time it has at most
one issued member and at most one draft member; a superseded member always points
at the document that replaced it. The partial unique indexes on `documents` are the
last line of enforcement, this module is the first.
"""
from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.riskdocs.constants import ISSUE_DRAFT, ISSUE_ISSUED, ISSUE_SUPERSEDED, OPS_LOGGER
from app.riskdocs.lifecycle.errors import InvariantViolation
from app.riskdocs.models import Document

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger(OPS_LOGGER)

STATUS_OK = "OK"
STATUS_NO_ACTIVE = "WARNING: No active version"
STATUS_MULTIPLE_ISSUED = "ERROR: Multiple issued"
STATUS_MULTIPLE_DRAFTS = "ERROR: Multiple drafts"
STATUS_DANGLING_SUPERSEDED = "ERROR: Superseded without successor"


def lock_lineage(s: Session, lineage_id: str) -> list[Document]:
    """
    Row-lock every member of the lineage for the rest of the transaction.

    SQLite ignores FOR UPDATE; it serializes writers at the database level instead.
    """
    stmt = (
        select(Document)
        .where(Document.lineage_id == lineage_id, Document.deleted_at.is_(None))
        .order_by(Document.version_number.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(s.scalars(stmt).all())


def _members(s: Session, lineage_id: str) -> list[Document]:
    stmt = (
        select(Document)
        .where(Document.lineage_id == lineage_id, Document.deleted_at.is_(None))
        .order_by(Document.version_number.asc())
    )
    return list(s.scalars(stmt).all())


def _violations(members: list[Document]) -> list[str]:
    issued = [d for d in members if d.issue_status == ISSUE_ISSUED]
    drafts = [d for d in members if d.issue_status == ISSUE_DRAFT]
    out = []
    if len(issued) > 1:
        out.append(STATUS_MULTIPLE_ISSUED)
    if len(drafts) > 1:
        out.append(STATUS_MULTIPLE_DRAFTS)
    if any(d.issue_status == ISSUE_SUPERSEDED and not d.superseded_by_id for d in members):
        out.append(STATUS_DANGLING_SUPERSEDED)
    return out


def assert_chain_invariant(s: Session, lineage_id: str) -> None:
    s.flush()
    problems = _violations(_members(s, lineage_id))
    if problems:
        ops_logger.error("CHAIN INVARIANT VIOLATED: lineage_id=%s problems=%s", lineage_id, problems)
        raise InvariantViolation(f"Lineage {lineage_id}: {', '.join(problems)}")


def next_version_number(s: Session, lineage_id: str) -> int:
    # Discarded drafts keep their number; it is never reused.
    current = s.scalar(select(func.max(Document.version_number)).where(Document.lineage_id == lineage_id))
    return (current or 0) + 1


def supersede(s: Session, previous_issued_id: str, new_issued_id: str) -> Document:
    """
    Mark the previous issued member as replaced by `new_issued_id`.

    Flushes straight away: the old row must leave 'issued' before the new row enters
    it, or the single-issued index rejects the pair. Runs inside the caller's
    transaction; it never commits.
    """
    prev = s.get(Document, previous_issued_id)
    if prev is None:
        raise InvariantViolation(f"Cannot supersede missing document {previous_issued_id}")
    if prev.issue_status != ISSUE_ISSUED:
        raise InvariantViolation(
            f"Cannot supersede document {previous_issued_id} in status {prev.issue_status!r}"
        )
    if previous_issued_id == new_issued_id:
        raise InvariantViolation("A document cannot supersede itself")
    now = datetime.utcnow()
    prev.issue_status = ISSUE_SUPERSEDED
    prev.superseded_by_id = new_issued_id
    prev.superseded_at = now
    prev.updated_at = now
    s.flush()
    logger.info("superseded document %s by %s", previous_issued_id, new_issued_id)
    return prev


@contextmanager
def chain_transaction(s: Session) -> Generator[Session, None, None]:
    """
    One atomic unit for a lifecycle mutation.

    Commits on success. A unique-index rejection means another writer got there
    first; it is reported as InvariantViolation and never retried.
    """
    try:
        yield s
        s.commit()
    except IntegrityError as e:
        s.rollback()
        ops_logger.error("CHAIN INVARIANT REJECTED BY DATABASE: %s", e.orig)
        raise InvariantViolation("Concurrent lifecycle change rejected; reload and try again.") from e
    except Exception:
        s.rollback()
        raise


@dataclass
class LineageHealth:
    lineage_id: str
    total_versions: int = 0
    issued_count: int = 0
    draft_count: int = 0
    superseded_count: int = 0
    latest_version: int | None = None
    status: str = STATUS_OK
    problems: list[str] = field(default_factory=list)
    artifact_issues: list[str] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.status.startswith("ERROR:")

    def to_dict(self) -> dict:
        return {
            "lineage_id": self.lineage_id,
            "total_versions": self.total_versions,
            "issued_count": self.issued_count,
            "draft_count": self.draft_count,
            "superseded_count": self.superseded_count,
            "latest_version": self.latest_version,
            "status": self.status,
            "problems": list(self.problems),
            "artifact_issues": list(self.artifact_issues),
        }


def lineage_health(s: Session, lineage_id: str) -> LineageHealth:
    members = _members(s, lineage_id)
    h = LineageHealth(lineage_id=lineage_id, total_versions=len(members))
    if not members:
        h.status = STATUS_NO_ACTIVE
        return h
    h.issued_count = sum(1 for d in members if d.issue_status == ISSUE_ISSUED)
    h.draft_count = sum(1 for d in members if d.issue_status == ISSUE_DRAFT)
    h.superseded_count = sum(1 for d in members if d.issue_status == ISSUE_SUPERSEDED)
    h.latest_version = max(d.version_number for d in members)
    h.problems = _violations(members)

    for d in members:
        if d.issue_status == ISSUE_DRAFT and d.locked_output_path:
            h.artifact_issues.append(f"Draft v{d.version_number} carries a locked output")

    if h.problems:
        h.status = h.problems[0]
    elif h.issued_count == 0 and h.draft_count == 0:
        h.status = STATUS_NO_ACTIVE
    return h


def version_history(s: Session, lineage_id: str) -> list[Document]:
    stmt = (
        select(Document)
        .where(Document.lineage_id == lineage_id, Document.deleted_at.is_(None))
        .order_by(Document.version_number.desc())
    )
    return list(s.scalars(stmt).all())


def all_lineage_ids(s: Session) -> list[str]:
    stmt = select(Document.lineage_id).where(Document.deleted_at.is_(None)).distinct().order_by(Document.lineage_id)
    return list(s.scalars(stmt).all())
