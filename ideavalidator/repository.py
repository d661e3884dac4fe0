import json
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ideavalidator import models, schemas
from ideavalidator.errors import PersistenceFailure, ReportNotFound

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


def save_report(
    db: Session,
    owner_id: int,
    original_idea: str,
    report: schemas.ValidationReport,
    provider: Optional[str] = None,
    request_id: Optional[str] = None,
) -> models.Report:
    """Append a report. Reports are never updated after this."""
    row = models.Report(
        owner_id=owner_id,
        original_idea=original_idea or "",
        summary_verdict=report.summary_verdict,
        viability_score=report.viability_score,
        one_line_takeaway=report.one_line_takeaway or "",
        market_reality=report.market_reality or "",
        full_report_json=json.dumps(report.model_dump(by_alias=True)),
        provider=provider,
        request_id=request_id,
    )
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save report for user {owner_id}: {e}")
        raise PersistenceFailure() from e
    # Committed from here on; a failed reload must not look like a failed save
    try:
        db.refresh(row)
    except SQLAlchemyError as e:
        logger.warning(f"Report for user {owner_id} saved but could not be reloaded: {e}")
    return row


def list_reports(db: Session, owner_id: int, limit: int = DEFAULT_PAGE_SIZE, page_size: int = DEFAULT_PAGE_SIZE) -> List[models.Report]:
    """Most recent first, never more than one page."""
    limit = max(1, min(int(limit or page_size), page_size))
    return (
        db.query(models.Report)
        .filter(models.Report.owner_id == owner_id)
        .order_by(models.Report.created_at.desc(), models.Report.id.desc())
        .limit(limit)
        .all()
    )


def get_report(db: Session, owner_id: int, report_id: int) -> models.Report:
    row = db.query(models.Report).filter(models.Report.id == report_id, models.Report.owner_id == owner_id).first()
    if not row:
        raise ReportNotFound()
    return row


def delete_reports(db: Session, owner_id: int) -> int:
    """Clear a user's history; returns the number of deleted rows."""
    deleted = db.query(models.Report).filter(models.Report.owner_id == owner_id).delete(synchronize_session=False)
    db.commit()
    return deleted


def report_payload(row: models.Report) -> dict:
    try:
        data = json.loads(row.full_report_json or "{}")
    except ValueError:
        logger.error(f"Failed to parse report data for report {row.id}")
        data = {}
    return data


def to_report_item(row: models.Report) -> schemas.ReportItem:
    return schemas.ReportItem(
        id=row.id,
        created_at=row.created_at,
        original_idea=row.original_idea,
        summary_verdict=row.summary_verdict,
        viability_score=row.viability_score,
        one_line_takeaway=row.one_line_takeaway,
        market_reality=row.market_reality,
        provider=row.provider,
        full_report_data=report_payload(row),
    )
