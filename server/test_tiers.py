"""Tests for tier limits and feature gating."""

from datetime import datetime, timedelta

import pytest

import config
import tiers
from errors import AppError
from models import User


def _user(tier="free", count=0, reset=None):
    return User(
        email=f"{tier}@example.com",
        password_hash="x",
        subscription_tier=tier,
        analysis_count=count,
        last_analysis_reset=reset or datetime.utcnow(),
    )


class TestFeatures:

    @pytest.mark.parametrize("tier,feature,expected", [
        ("free", "basic_analytics", True),
        ("free", "export", False),
        ("free", "api_access", False),
        ("pro", "export", True),
        ("pro", "advanced_analytics", True),
        ("enterprise", "anything_at_all", True),
    ])
    def test_has_feature(self, tier, feature, expected):
        assert tiers.has_feature(_user(tier), feature) is expected

    def test_check_feature_suggests_upgrade(self):
        with pytest.raises(AppError) as exc_info:
            tiers.check_feature(_user("free"), "export")

        error = exc_info.value
        assert error.code == "FEATURE_NOT_AVAILABLE"
        assert error.status_code == 403
        assert error.details["upgrade_to"] == "pro"

    def test_unknown_tier_falls_back_to_free(self):
        assert tiers.get_limits("platinum") == tiers.TIER_LIMITS["free"]


class TestDailyQuota:

    def test_remaining(self):
        assert tiers.remaining_analyses(_user("free", count=4)) == 6
        assert tiers.remaining_analyses(_user("enterprise", count=500)) is None

    def test_limit_exceeded(self):
        user = _user("free", count=10)

        with pytest.raises(AppError) as exc_info:
            tiers.check_analysis_limit(user)

        error = exc_info.value
        assert error.code == "ANALYSIS_LIMIT_EXCEEDED"
        assert error.status_code == 429
        assert error.headers["X-Analysis-Remaining"] == "0"

    def test_batch_counts_every_repository(self):
        with pytest.raises(AppError):
            tiers.check_analysis_limit(_user("free", count=8), count=3)
        tiers.check_analysis_limit(_user("free", count=7), count=3)

    def test_window_resets_after_a_day(self):
        user = _user("free", count=10, reset=datetime.utcnow() - timedelta(hours=25))

        tiers.check_analysis_limit(user)
        assert user.analysis_count == 0

    def test_limit_headers(self):
        headers = tiers.analysis_limit_headers(_user("pro", count=1))
        assert headers["X-Analysis-Limit"] == "100"
        assert headers["X-Analysis-Remaining"] == "99"
        assert tiers.analysis_limit_headers(_user("enterprise"))["X-Analysis-Limit"] == "unlimited"


class TestClaimAnalysis:

    def test_claim_increments_stored_count(self, db, make_user):
        user = make_user()

        tiers.claim_analysis(db, user)
        tiers.claim_analysis(db, user)

        assert user.analysis_count == 2
        assert db.query(User.analysis_count).filter(User.id == user.id).scalar() == 2

    def test_claim_at_limit_is_refused(self, db, make_user):
        user = make_user()
        user.analysis_count = 10
        user.last_analysis_reset = datetime.utcnow()
        db.commit()

        with pytest.raises(AppError) as exc_info:
            tiers.claim_analysis(db, user)

        assert exc_info.value.code == "ANALYSIS_LIMIT_EXCEEDED"
        assert exc_info.value.details["remaining"] == 0
        assert user.analysis_count == 10

    def test_claim_starts_a_new_window(self, db, make_user):
        user = make_user()
        user.analysis_count = 10
        user.last_analysis_reset = datetime.utcnow() - timedelta(hours=25)
        db.commit()

        tiers.claim_analysis(db, user)

        assert user.analysis_count == 1
        assert datetime.utcnow() - user.last_analysis_reset < timedelta(minutes=1)

    def test_unlimited_tier_still_counts(self, db, make_user):
        user = make_user("ent@example.com", tier="enterprise")
        user.analysis_count = 5000
        db.commit()

        tiers.claim_analysis(db, user)
        assert user.analysis_count == 5001

    def test_release_gives_slot_back(self, db, make_user):
        user = make_user()
        tiers.claim_analysis(db, user)

        tiers.release_analysis(db, user)
        tiers.release_analysis(db, user)

        assert user.analysis_count == 0


class TestOtherLimits:

    def test_batch_size(self):
        assert tiers.batch_size_limit(_user("free")) == 3
        assert tiers.batch_size_limit(_user("pro")) == config.BATCH_MAX_SIZE
        assert tiers.batch_size_limit(None) == 3

    def test_hourly_api_limit(self):
        assert tiers.hourly_api_limit(_user("pro")) == 1000
        assert tiers.hourly_api_limit(_user("enterprise")) == tiers.UNLIMITED
