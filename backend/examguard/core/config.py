import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    port: int = 8000
    environment: str = "development"
    project_name: str = "ExamGuard Proctoring API"

    postgres_user: str = os.getenv("POSTGRES_USER", "user")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "password")
    postgres_db: str = os.getenv("POSTGRES_DB", "examguard_db")
    postgres_host: str = os.getenv("POSTGRES_HOST", "db")
    postgres_port: int = 5432
    database_url_override: Optional[str] = None

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    secret_key: str
    algorithm: str = "HS256"

    cors_origins_str: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins_str.split(",")]

    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_enabled: bool = True
    cache_default_ttl: int = 600
    # 0 disables dashboard snapshot caching
    dashboard_cache_ttl: int = 0
    live_notification_ttl: int = 3600

    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
    celery_task_always_eager: bool = False

    display_timezone: str = "UTC"
    timeline_label_format: str = "%H:%M"

    # Client-side detector
    media_poll_interval: float = 2.0
    violation_throttle_ms: int = 1000
    gaze_away_threshold_ms: int = 3000
    gaze_offset_threshold_px: float = 20.0
    face_match_distance: float = 0.6
    surprised_expression_threshold: float = 0.8
    audio_activity_threshold: float = 50.0
    audio_low_band_threshold: float = 30.0
    audio_mid_band_threshold: float = 40.0
    audio_high_band_threshold: float = 20.0

    # Risk scoring
    frequency_penalty_threshold: float = 0.5
    frequency_penalty_multiplier: float = 1.5
    cluster_window_ms: int = 30000
    cluster_bonus: float = 10.0
    escalation_bonus: float = 5.0
    warning_risk_score: float = 70.0
    warning_violation_count: int = 10

    # Aggregation
    high_risk_score: float = 60.0
    timeline_bucket_minutes: int = 10
    timeline_bucket_count: int = 12
    recent_violations_limit: int = 10
    anomaly_violation_count: int = 15
    anomaly_tab_switches: int = 8
    anomaly_risk_score: float = 80.0
    spike_window_minutes: int = 10
    spike_event_count: int = 20
    max_anomalies: int = 10

    # Termination policy
    terminate_risk_score: float = 85.0
    terminate_violation_count: int = 25

    event_retention_days: int = 180

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
