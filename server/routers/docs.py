"""
Documentation viewer API.
"""

from fastapi import APIRouter, Depends, Query, Request

from schemas import DocCategory, DocPage, DocSummary
from services.docs import DocsLibrary

router = APIRouter(prefix="/api/docs", tags=["docs"])


def get_docs_library(request: Request) -> DocsLibrary:
    return request.app.state.docs


@router.get("", response_model=list[DocCategory])
def list_docs(docs: DocsLibrary = Depends(get_docs_library)):
    return docs.list_categories()


@router.get("/search", response_model=list[DocSummary])
def search_docs(
    q: str = Query(..., min_length=1, max_length=200),
    limit: int = Query(20, ge=1, le=50),
    docs: DocsLibrary = Depends(get_docs_library),
):
    return docs.search(q, limit)


@router.get("/{category}/{slug}", response_model=DocPage)
def get_doc(category: str, slug: str, docs: DocsLibrary = Depends(get_docs_library)):
    return docs.get(category, slug)
