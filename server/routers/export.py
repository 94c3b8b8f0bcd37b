"""
CSV and PDF downloads of analyses and batch results. Requires the `export` feature.
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

import tiers
from database import get_db
from errors import AppError
from models import BatchItem, Repository, User
from routers.batch import get_user_job
from services import export

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/export", tags=["export"])

MEDIA_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "pdf": "application/pdf",
}


def _download(content: bytes | str, extension: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=MEDIA_TYPES[extension],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _render(pairs, extension: str, single: bool):
    try:
        if extension == "csv":
            return export.analyses_to_csv(pairs)
        if single:
            return export.analysis_to_pdf(*pairs[0])
        return export.batch_to_pdf(pairs)
    except Exception as e:
        logger.exception("Export rendering failed")
        raise AppError("EXPORT_FAILED") from e


@router.get("/analysis/{repository_id}")
def export_analysis(
    repository_id: int,
    format: str = Query("pdf", pattern="^(csv|pdf)$"),
    user: User = Depends(tiers.require_feature("export")),
    db: Session = Depends(get_db),
):
    repo = db.get(Repository, repository_id)
    if repo is None:
        raise AppError("NOT_FOUND", "Repository not found.")
    if repo.analysis is None:
        raise AppError("INVALID_INPUT", "Repository has not been analyzed yet.")

    content = _render([(repo, repo.analysis)], format, single=True)
    return _download(content, format, export.export_filename("analysis", format, repo.name))


@router.get("/batch/{job_id}")
def export_batch(
    job_id: int,
    format: str = Query("csv", pattern="^(csv|pdf)$"),
    user: User = Depends(tiers.require_feature("export")),
    db: Session = Depends(get_db),
):
    job = get_user_job(db, user, job_id)
    items = (
        db.query(BatchItem)
        .filter(BatchItem.job_id == job.id, BatchItem.status == "completed")
        .order_by(BatchItem.position)
        .all()
    )
    pairs = [(item.repository, item.analysis) for item in items if item.repository and item.analysis]
    if not pairs:
        raise AppError("INVALID_INPUT", "This batch has no completed analyses to export.")

    content = _render(pairs, format, single=False)
    return _download(content, format, export.export_filename("batch", format))
