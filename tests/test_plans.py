from datetime import datetime, timedelta

import pytest

from billing_service.core.config import Settings
from billing_service.core.plans import (
    Plan,
    has_single_duration,
    normalize_plan,
    plan_duration,
    plan_from_provider,
    valid_until_from,
)


def test_normalize_plan_maps_legacy_weekly_to_monthly():
    assert normalize_plan("weekly") == Plan.monthly
    assert normalize_plan(" Weekly ") == Plan.monthly
    assert normalize_plan("pongal_weekly") == Plan.weekly_installment


def test_normalize_plan_passthrough_and_empty():
    assert normalize_plan(Plan.yearly) is Plan.yearly
    assert normalize_plan("weekly_installment") == Plan.weekly_installment
    assert normalize_plan(None) is None
    assert normalize_plan("") is None


def test_normalize_plan_rejects_unknown():
    with pytest.raises(ValueError):
        normalize_plan("lifetime")


def test_durations(settings):
    assert plan_duration(Plan.monthly, settings) == timedelta(days=30)
    assert plan_duration(Plan.yearly, settings) == timedelta(days=365)
    assert plan_duration("weekly", settings) == timedelta(days=30)
    with pytest.raises(ValueError):
        plan_duration(Plan.weekly_installment, settings)
    assert has_single_duration(Plan.monthly)
    assert not has_single_duration(Plan.weekly_installment)


def test_valid_until_from(settings):
    anchor = datetime(2026, 1, 1)
    assert valid_until_from(Plan.monthly, anchor, settings) == datetime(2026, 1, 31)


def test_plan_from_provider_prefers_notes(settings):
    assert plan_from_provider("plan_monthly_x", settings, {"plan": "yearly"}) == Plan.yearly


def test_plan_from_provider_uses_configured_mapping():
    settings = Settings(RAZORPAY_PLAN_IDS={"plan_Nxyz": "weekly_installment"})
    assert plan_from_provider("plan_Nxyz", settings) == Plan.weekly_installment


def test_plan_from_provider_naming_convention(settings):
    assert plan_from_provider("plan_yearly_2026", settings) == Plan.yearly
    assert plan_from_provider("plan_weekly_old", settings) == Plan.monthly
    assert plan_from_provider("plan_installment_3w", settings) == Plan.weekly_installment
    assert plan_from_provider("plan_Abc123", settings) is None
    assert plan_from_provider(None, settings) is None


def test_settings_convert_rupee_amounts_to_paise():
    settings = Settings(MONTHLY_AMOUNT=799, YEARLY_AMOUNT=5499, WEEKLY_INSTALLMENT_AMOUNT=499)
    assert settings.MONTHLY_AMOUNT == 79900
    assert settings.YEARLY_AMOUNT == 549900
    assert settings.WEEKLY_INSTALLMENT_AMOUNT == 49900


def test_settings_normalize_database_url_and_workers():
    settings = Settings(DATABASE_URL="postgres://u:p@host/db", RECONCILE_WORKERS=500)
    assert settings.DATABASE_URL == "postgresql://u:p@host/db"
    assert settings.RECONCILE_WORKERS == 32


def test_settings_refuse_dev_secret_in_production():
    with pytest.raises(ValueError):
        Settings(APP_ENV="prod", JWT_SECRET="dev-secret-change-me")
