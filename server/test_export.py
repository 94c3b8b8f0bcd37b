"""Tests for CSV and PDF exports."""

import csv
import io
from datetime import datetime

from models import BatchItem, BatchJob
from services import export


def completed_batch(db, user, repos) -> BatchJob:
    job = BatchJob(user_id=user.id, status="completed", total_items=len(repos), completed_items=len(repos),
                   progress=100)
    job.items = [
        BatchItem(position=i, url=repo.html_url, status="completed", repository_id=repo.id,
                  analysis_id=repo.analysis.id)
        for i, repo in enumerate(repos)
    ]
    db.add(job)
    db.commit()
    return job


class TestFilenames:

    def test_analysis_filename(self):
        name = export.export_filename("analysis", "pdf", "my repo", day=datetime(2024, 3, 1))
        assert name == "analysis_my_repo_2024-03-01.pdf"

    def test_batch_filename(self):
        assert export.export_filename("batch", "csv", day=datetime(2024, 3, 1)) == "batch_analysis_2024-03-01.csv"


class TestAnalysisExport:

    def test_free_tier_is_refused(self, client, headers, seed_repository):
        repo = seed_repository("octo/radar")

        response = client.get(f"/api/export/analysis/{repo.id}", headers=headers)

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "FEATURE_NOT_AVAILABLE"
        assert error["details"]["upgrade_to"] == "pro"

    def test_csv(self, client, pro_headers, seed_repository):
        repo = seed_repository("octo/radar", overall=8.5)

        response = client.get(f"/api/export/analysis/{repo.id}", params={"format": "csv"}, headers=pro_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert 'filename="analysis_radar_' in response.headers["content-disposition"]

        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == export.CSV_HEADERS
        assert rows[1][1] == "octo/radar"
        assert rows[1][7] == "8.5"

    def test_pdf(self, client, pro_headers, seed_repository):
        repo = seed_repository("octo/radar")

        response = client.get(f"/api/export/analysis/{repo.id}", headers=pro_headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content.startswith(b"%PDF")

    def test_unknown_format(self, client, pro_headers, seed_repository):
        repo = seed_repository("octo/radar")
        response = client.get(f"/api/export/analysis/{repo.id}", params={"format": "xlsx"}, headers=pro_headers)
        assert response.status_code == 422

    def test_missing_repository(self, client, pro_headers):
        assert client.get("/api/export/analysis/77", headers=pro_headers).status_code == 404


class TestBatchExport:

    def test_csv_has_one_row_per_item(self, client, db, pro_user, pro_headers, seed_repository):
        job = completed_batch(db, pro_user, [seed_repository("octo/radar"), seed_repository("octo/sonar")])

        response = client.get(f"/api/export/batch/{job.id}", headers=pro_headers)

        assert response.status_code == 200
        rows = list(csv.reader(io.StringIO(response.text)))
        assert [row[1] for row in rows[1:]] == ["octo/radar", "octo/sonar"]
        assert "batch_analysis_" in response.headers["content-disposition"]

    def test_pdf(self, client, db, pro_user, pro_headers, seed_repository):
        job = completed_batch(db, pro_user, [seed_repository("octo/radar")])

        response = client.get(f"/api/export/batch/{job.id}", params={"format": "pdf"}, headers=pro_headers)

        assert response.content.startswith(b"%PDF")

    def test_empty_batch(self, client, db, pro_user, pro_headers):
        job = BatchJob(user_id=pro_user.id, status="failed", total_items=1, failed_items=1)
        job.items = [BatchItem(position=0, url="https://github.com/octo/radar", status="error")]
        db.add(job)
        db.commit()

        response = client.get(f"/api/export/batch/{job.id}", headers=pro_headers)
        assert response.status_code == 400

    def test_someone_elses_batch(self, client, db, user, pro_headers, seed_repository):
        job = completed_batch(db, user, [seed_repository("octo/radar")])
        assert client.get(f"/api/export/batch/{job.id}", headers=pro_headers).status_code == 404
