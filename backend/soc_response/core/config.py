from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "soc-response-engine"
    ENVIRONMENT: str = "local"
    LOG_LEVEL: str = "INFO"

    # Database
    POSTGRES_HOST: str = "db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "soc_response"
    POSTGRES_USER: str = "soc_user"
    POSTGRES_PASSWORD: str = "soc_password"

    # Full SQLAlchemy URL; overrides the POSTGRES_* parts when set
    DATABASE_URL_OVERRIDE: str | None = None

    # Correlation / rules
    CORRELATION_WINDOW_SECONDS: int = 300
    SEED_DEFAULT_RULES: bool = True
    DEFAULT_ALERT_EMAIL: str = "security@company.com"

    # External collaborator timeouts (seconds)
    NOTIFIER_TIMEOUT: float = 5.0
    ACTION_RUNNER_TIMEOUT: float = 30.0
    INDICATOR_FEED_TIMEOUT: float = 10.0
    SCORING_LOOKUP_TIMEOUT: float = 2.0

    # Background hygiene intervals (seconds)
    INDICATOR_SWEEP_INTERVAL: int = 3600
    INDICATOR_FEED_REFRESH_INTERVAL: int = 4 * 3600
    CORRELATION_PRUNE_INTERVAL: int = 60
    SUPPRESSION_CLEANUP_INTERVAL: int = 300

    # Threat scoring
    LOCAL_TIMEZONE: str = "UTC"  # off-hours window is evaluated in this zone

    # Threat intel
    ABUSEIPDB_API_KEY: str | None = None
    INDICATOR_FEED_URL: str | None = None
    INDICATOR_FEED_TOKEN: str | None = None

    # Alerting / Webhooks
    SLACK_ALERT_WEBHOOK_URL: str | None = None
    GENERIC_ALERT_WEBHOOK_URL: str | None = None

    # Incident response
    INCIDENT_COMMANDERS: dict[str, str] = {
        "P1_CRITICAL": "security-commander-1",
        "P2_HIGH": "security-commander-1",
        "P3_MEDIUM": "security-lead",
        "P4_LOW": "security-lead",
    }
    POST_INCIDENT_REVIEW_DAYS: int = 5
    # Seconds in one escalation "minute"; lowered in tests
    ESCALATION_MINUTE_SECONDS: float = 60.0

    # Automated response scripts
    ACTION_SCRIPTS_DIR: str = "scripts/incident_actions"
    ACTION_RUNNER_DRY_RUN: bool = True

    # Construct SQLAlchemy URL
    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
