"""
CSV and PDF exports of repository analyses.
"""

import csv
import html
import io
import json
from datetime import datetime

from reportlab.lib.colors import HexColor, white
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from models import Repository, RepositoryAnalysis

CSV_HEADERS = [
    "Repository Name",
    "Full Name",
    "Description",
    "Language",
    "Stars",
    "Forks",
    "Analysis Date",
    "Overall Score",
    "Originality Score",
    "Completeness Score",
    "Marketability Score",
    "Monetization Score",
    "Usefulness Score",
    "Key Findings",
    "Recommendations",
    "Weaknesses",
]

METRIC_LABELS = [
    ("originality", "Originality"),
    ("completeness", "Completeness"),
    ("marketability", "Marketability"),
    ("monetization", "Monetization"),
    ("usefulness", "Usefulness"),
]

LIST_SEPARATOR = "; "

Pair = tuple[Repository, RepositoryAnalysis]


def _json_list(text: str | None) -> list:
    try:
        value = json.loads(text) if text else []
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []


def _points(text: str | None, key: str) -> list[str]:
    return [item.get(key, "") for item in _json_list(text) if isinstance(item, dict) and item.get(key)]


def _safe_name(name: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in name)


def export_filename(kind: str, extension: str, repository_name: str | None = None,
                    day: datetime | None = None) -> str:
    """analysis_<name>_<YYYY-MM-DD>.<ext> or batch_analysis_<YYYY-MM-DD>.<ext>"""
    date = (day or datetime.utcnow()).strftime("%Y-%m-%d")
    if kind == "batch":
        return f"batch_analysis_{date}.{extension}"
    return f"analysis_{_safe_name(repository_name or 'repository')}_{date}.{extension}"


# =============================================================================
# CSV
# =============================================================================

def csv_row(repo: Repository, analysis: RepositoryAnalysis) -> list:
    return [
        repo.name,
        repo.full_name,
        repo.description or "",
        repo.language or "",
        repo.stars or 0,
        repo.forks or 0,
        analysis.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        analysis.overall_score,
        analysis.originality,
        analysis.completeness,
        analysis.marketability,
        analysis.monetization,
        analysis.usefulness,
        LIST_SEPARATOR.join(_points(analysis.strengths, "point")),
        LIST_SEPARATOR.join(_points(analysis.recommendations, "suggestion")),
        LIST_SEPARATOR.join(_points(analysis.weaknesses, "point")),
    ]


def analyses_to_csv(pairs: list[Pair]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADERS)
    for repo, analysis in pairs:
        writer.writerow(csv_row(repo, analysis))
    return buffer.getvalue()


# =============================================================================
# PDF
# =============================================================================

def _styles() -> dict:
    styles = getSampleStyleSheet()
    return {
        "normal": styles["Normal"],
        "title": ParagraphStyle(
            "ReportTitle",
            parent=styles["Heading1"],
            fontSize=20,
            textColor=HexColor("#1a237e"),
            spaceAfter=14,
            alignment=TA_CENTER,
            fontName="Helvetica-Bold",
        ),
        "heading": ParagraphStyle(
            "ReportHeading",
            parent=styles["Heading2"],
            fontSize=13,
            textColor=HexColor("#283593"),
            spaceAfter=8,
            spaceBefore=8,
            fontName="Helvetica-Bold",
        ),
        "bullet": ParagraphStyle(
            "ReportBullet",
            parent=styles["Normal"],
            leftIndent=12,
            spaceAfter=4,
        ),
    }


def _table_style() -> TableStyle:
    return TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), HexColor("#3949ab")),
        ("TEXTCOLOR", (0, 0), (-1, 0), white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ALIGN", (1, 0), (-1, -1), "CENTER"),
        ("GRID", (0, 0), (-1, -1), 0.5, HexColor("#3949ab")),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [HexColor("#e8eaf6"), white]),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ])


def _text(value) -> str:
    return html.escape(str(value or ""))


def _analysis_story(repo: Repository, analysis: RepositoryAnalysis, styles: dict) -> list:
    story = [
        Paragraph("Repository Analysis Report", styles["title"]),
        Paragraph(f"<b>Repository:</b> {_text(repo.full_name)}", styles["normal"]),
        Paragraph(f"<b>Description:</b> {_text(repo.description or 'No description')}", styles["normal"]),
        Paragraph(
            f"<b>Language:</b> {_text(repo.language or 'Unknown')} &nbsp; "
            f"<b>Stars:</b> {repo.stars or 0} &nbsp; <b>Forks:</b> {repo.forks or 0}",
            styles["normal"],
        ),
        Paragraph(f"<b>Analysis Date:</b> {analysis.updated_at.strftime('%Y-%m-%d %H:%M')}", styles["normal"]),
        Paragraph(f"<b>Overall Score:</b> {analysis.overall_score:.1f}/10", styles["normal"]),
        Spacer(1, 0.15 * inch),
        Paragraph("Scores", styles["heading"]),
    ]

    rows = [["Metric", "Score"]]
    rows += [[label, f"{getattr(analysis, metric):.1f}/10"] for metric, label in METRIC_LABELS]
    rows.append(["Overall", f"{analysis.overall_score:.1f}/10"])
    table = Table(rows, colWidths=[2.5 * inch, 1.5 * inch])
    table.setStyle(_table_style())
    story.append(table)

    story.append(Paragraph("Summary", styles["heading"]))
    story.append(Paragraph(_text(analysis.summary), styles["normal"]))

    sections = [
        ("Key Findings", _json_list(analysis.strengths), "point", "reason"),
        ("Areas for Improvement", _json_list(analysis.weaknesses), "point", "reason"),
        ("Recommendations", _json_list(analysis.recommendations), "suggestion", "impact"),
    ]
    for title, items, head, tail in sections:
        if not items:
            continue
        story.append(Paragraph(title, styles["heading"]))
        for item in items:
            if not isinstance(item, dict):
                continue
            line = f"&bull; <b>{_text(item.get(head))}</b>"
            if item.get(tail):
                line += f": {_text(item.get(tail))}"
            story.append(Paragraph(line, styles["bullet"]))
    return story


def _build_pdf(story: list) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer, pagesize=letter,
        rightMargin=0.75 * inch, leftMargin=0.75 * inch,
        topMargin=1 * inch, bottomMargin=0.75 * inch,
        title="Repository Analysis Report", author="RepoRadar",
    )
    doc.build(story)
    return buffer.getvalue()


def analysis_to_pdf(repo: Repository, analysis: RepositoryAnalysis) -> bytes:
    return _build_pdf(_analysis_story(repo, analysis, _styles()))


def batch_to_pdf(pairs: list[Pair]) -> bytes:
    """Summary table with the average score, then one section per repository."""
    styles = _styles()
    average = sum(a.overall_score for _, a in pairs) / len(pairs) if pairs else 0.0

    story = [
        Paragraph("Batch Analysis Report", styles["title"]),
        Paragraph(f"<b>Generated:</b> {datetime.utcnow().strftime('%Y-%m-%d %H:%M')} UTC", styles["normal"]),
        Paragraph(f"<b>Repositories:</b> {len(pairs)}", styles["normal"]),
        Paragraph(f"<b>Average Score:</b> {average:.1f}/10", styles["normal"]),
        Spacer(1, 0.15 * inch),
    ]

    rows = [["Repository", "Overall"] + [label for _, label in METRIC_LABELS]]
    for repo, analysis in pairs:
        rows.append(
            [repo.full_name, f"{analysis.overall_score:.1f}"]
            + [f"{getattr(analysis, metric):.1f}" for metric, _ in METRIC_LABELS]
        )
    table = Table(rows, repeatRows=1)
    table.setStyle(_table_style())
    story.append(table)

    for repo, analysis in pairs:
        story.append(Spacer(1, 0.3 * inch))
        story.extend(_analysis_story(repo, analysis, styles)[1:])
    return _build_pdf(story)
