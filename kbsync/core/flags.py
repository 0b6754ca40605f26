"""
Central feature flags. One file controls every external dependency.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the system uses a local/no-op fallback. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Auth ─────────────────────────────────────────────────────────
    use_auth0: bool = Field(default=True, alias="FF_USE_AUTH0")
    # ON  → JWT validated via Auth0 JWKS. Needs AUTH0_DOMAIN, AUTH0_AUDIENCE.
    # OFF → Dev user injected (tenant_id="dev-tenant"). No token needed.

    # ── Storage ──────────────────────────────────────────────────────
    use_s3: bool = Field(default=True, alias="FF_USE_S3")
    # ON  → Raw documents go to AWS S3. Needs AWS creds + S3_BUCKET_NAME.
    # OFF → Saved under LOCAL_STORAGE_PATH using the same key layout.

    # ── Cache / Realtime ─────────────────────────────────────────────
    use_redis: bool = Field(default=True, alias="FF_USE_REDIS")
    # ON  → Dashboard rollups cached in Redis, status events via pub/sub.
    # OFF → Nothing cached, notifications silently skipped.

    # ── Reconciliation ───────────────────────────────────────────────
    use_sweeper: bool = Field(default=True, alias="FF_USE_SWEEPER")
    # ON  → Background sweep every SWEEP_INTERVAL_SECONDS.
    # OFF → Only on-demand sweeps via POST /v1/documents/sync.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
