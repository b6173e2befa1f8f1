from ethicsflow.core.config import ReviewPolicyConfig, SentryConfig, get_admin_api_key


def test_policy_defaults(monkeypatch):
    for key in (
        "REVIEWER_QUOTA_EXPEDITED",
        "REVIEWER_QUOTA_FULL_REVIEW",
        "REVIEW_WINDOW_DAYS",
        "SIGNED_URL_TTL_SECONDS",
        "DOCUMENTS_BUCKET",
    ):
        monkeypatch.delenv(key, raising=False)

    policy = ReviewPolicyConfig.from_env()

    assert policy.quota_for("Exempted") == 0
    assert policy.quota_for("Expedited") == 3
    assert policy.quota_for("Full Review") == 5
    assert policy.quota_for(None) == 0
    assert policy.review_window_days == 14
    assert policy.signed_url_ttl_seconds == 3600
    assert policy.documents_bucket == "research-documents"


def test_quotas_are_configurable(monkeypatch):
    monkeypatch.setenv("REVIEWER_QUOTA_EXPEDITED", "2")
    monkeypatch.setenv("REVIEWER_QUOTA_FULL_REVIEW", "not-a-number")

    policy = ReviewPolicyConfig.from_env()

    assert policy.quota_for("Expedited") == 2
    assert policy.quota_for("Full Review") == 5


def test_review_window_is_clamped(monkeypatch):
    monkeypatch.setenv("REVIEW_WINDOW_DAYS", "3")
    assert ReviewPolicyConfig.from_env().review_window_days == 7
    monkeypatch.setenv("REVIEW_WINDOW_DAYS", "90")
    assert ReviewPolicyConfig.from_env().review_window_days == 30
    monkeypatch.setenv("SIGNED_URL_TTL_SECONDS", "0")
    assert ReviewPolicyConfig.from_env().signed_url_ttl_seconds == 3600


def test_sentry_enabled_follows_dsn(monkeypatch):
    monkeypatch.delenv("SENTRY_ENABLED", raising=False)
    monkeypatch.setenv("SENTRY_DSN", "https://key@sentry.example/1")
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "0.25")
    cfg = SentryConfig.from_env()
    assert cfg.enabled is True
    assert cfg.traces_sample_rate == 0.25

    monkeypatch.setenv("SENTRY_ENABLED", "false")
    assert SentryConfig.from_env().enabled is False


def test_admin_api_key(monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEY", "  cron-key ")
    assert get_admin_api_key() == "cron-key"
    monkeypatch.delenv("ADMIN_API_KEY")
    assert get_admin_api_key() is None
