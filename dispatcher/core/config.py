from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "Thread Dispatcher"
    debug: bool = False
    port: int = 3000

    # Slack
    slack_bot_token: str = ""
    slack_signing_secret: str = ""
    slack_bot_user_id: str = ""
    slack_bot_id: str = ""
    slack_allowed_users: list[str] = []
    slack_blocked_users: list[str] = []
    # Token rotation (all three required to enable the rotator)
    slack_client_id: str = ""
    slack_client_secret: str = ""
    slack_refresh_token: str = ""
    slack_token_url: str = "https://slack.com/api/oauth.v2.access"
    token_refresh_margin_seconds: int = 30 * 60
    token_refresh_retry_seconds: int = 5 * 60

    # Kubernetes
    kubeconfig: str = ""
    kubernetes_namespace: str = "default"
    worker_image: str = "claude-worker:latest"
    worker_image_pull_policy: str = "IfNotPresent"
    worker_cpu: str = "1000m"
    worker_memory: str = "2Gi"
    worker_workspace_size: str = "10Gi"
    worker_service_account: str = "claude-worker"
    worker_secret_name: str = "peerbot-secrets"
    worker_job_prefix: str = "claude-worker"
    worker_node_selector: dict[str, str] = {}
    job_ttl_after_finished_seconds: int = 300

    # Session lifetime. Enforced by the cluster via activeDeadlineSeconds.
    session_timeout_seconds: int = 600

    # Local job monitoring. Independent of session_timeout_seconds; see
    # check_monitor_window() in main.py.
    job_monitor_initial_delay_seconds: float = 5.0
    job_monitor_interval_seconds: float = 10.0
    job_monitor_max_attempts: int = 60

    # Rate limiting
    rate_limit_backend: str = "memory"  # memory | redis
    rate_limit_max_jobs: int = 5
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_sweep_seconds: int = 5 * 60
    disable_rate_limit: bool = False
    redis_url: str = "redis://localhost:6379"

    # Session persistence (S3)
    session_bucket: str = ""
    aws_region: str = "us-east-1"
    session_lookback_days: int = 7

    # GitHub
    github_token: str = ""
    github_organization: str = "peerbot-community"

    # Claude execution options handed to workers
    claude_model: str = ""
    claude_fallback_model: str = ""
    claude_allowed_tools: str = ""
    claude_disallowed_tools: str = ""
    claude_max_turns: str = ""
    claude_custom_instructions: str = ""

    # Shutdown
    shutdown_drain_seconds: float = 60.0

    @property
    def rate_limit_ceiling(self) -> int:
        return 999 if self.disable_rate_limit else self.rate_limit_max_jobs

    @property
    def token_rotation_enabled(self) -> bool:
        return bool(self.slack_client_id and self.slack_client_secret and self.slack_refresh_token)

    @property
    def monitor_window_seconds(self) -> float:
        return self.job_monitor_initial_delay_seconds + (
            self.job_monitor_interval_seconds * self.job_monitor_max_attempts
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
