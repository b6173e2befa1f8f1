import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int) -> int:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class AppConfig:
    """
    Application environment config.
    """
    env: str  # 'development', 'staging', 'production'
    is_staging: bool
    supabase_url: str
    supabase_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        return AppConfig(
            env=env,
            is_staging=env == "staging",
            supabase_url=supabase_url,
            supabase_key=supabase_key,
        )


# Global Config Instance
app_config = AppConfig.from_env()


MIN_REVIEW_WINDOW_DAYS = 7
MAX_REVIEW_WINDOW_DAYS = 30


@dataclass(frozen=True)
class ReviewPolicyConfig:
    """
    审查流程策略配置（审稿人配额 / 审查期限 / 文档签名链接）。

    中文注释:
    1) 配额是策略而不是常量：Expedited/Full Review 的人数必须可通过环境变量调整。
    2) 审查期限被限制在 7..30 天，超出范围时取边界值。
    3) 签名链接默认 1 小时过期，核心逻辑从不生成永久公开链接。
    """

    quotas: dict[str, int] = field(default_factory=dict)
    review_window_days: int = 14
    signed_url_ttl_seconds: int = 3600
    documents_bucket: str = "research-documents"

    def quota_for(self, classification: str | None) -> int:
        if not classification:
            return 0
        return max(0, int(self.quotas.get(str(classification), 0)))

    @staticmethod
    def from_env() -> "ReviewPolicyConfig":
        quotas = {
            "Exempted": _env_int("REVIEWER_QUOTA_EXEMPTED", 0),
            "Expedited": _env_int("REVIEWER_QUOTA_EXPEDITED", 3),
            "Full Review": _env_int("REVIEWER_QUOTA_FULL_REVIEW", 5),
        }

        window = _env_int("REVIEW_WINDOW_DAYS", 14)
        window = min(max(window, MIN_REVIEW_WINDOW_DAYS), MAX_REVIEW_WINDOW_DAYS)

        ttl = _env_int("SIGNED_URL_TTL_SECONDS", 3600)
        if ttl <= 0:
            ttl = 3600

        bucket = (os.environ.get("DOCUMENTS_BUCKET") or "research-documents").strip()

        return ReviewPolicyConfig(
            quotas=quotas,
            review_window_days=window,
            signed_url_ttl_seconds=ttl,
            documents_bucket=bucket,
        )


@dataclass(frozen=True)
class SentryConfig:
    """
    Sentry 配置（可选）。未配置 DSN 时整体禁用。
    """

    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", dsn is not None),
            dsn=dsn,
            environment=(
                os.environ.get("SENTRY_ENVIRONMENT") or app_config.env or "development"
            ).strip(),
            traces_sample_rate=_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        )


def get_admin_api_key() -> Optional[str]:
    """
    内部 Cron 接口鉴权 Key

    中文注释:
    - 仅用于 `/api/v1/internal/cron/*`（例如批量补齐批准文件）。
    """

    raw = os.environ.get("ADMIN_API_KEY")
    return raw.strip() if raw else None
