"""Application configuration. All env vars defined here with defaults."""

from typing import Optional

from pydantic_settings import BaseSettings


class TaskweaveConfig(BaseSettings):
    # ── App ──
    app_name: str = "taskweave"
    debug: bool = False
    log_level: str = "INFO"

    # ── Persistence ──
    database_url: str = "sqlite+aiosqlite:///./taskweave.db"   # "memory://" for the in-memory store

    # ── Callbacks ──
    public_base_url: str = "http://localhost:8000/api"          # prefix for {{systemWebhookUrl}}

    # ── Outbound calls ──
    outbound_timeout_seconds: float = 30.0
    outbound_success_status_codes: list[int] = [200, 201, 202, 204]

    # ── Engine ──
    dedup_ttl_seconds: int = 300                 # seen-event set is cleared this often
    join_deadline_check_interval: int = 30       # seconds between join deadline sweeps
    foreach_default_max_items: int = 100
    max_workflow_steps: int = 100

    # ── Definitions ──
    workflows_dir: Optional[str] = None          # *.yaml / *.json loaded at API startup

    # ── Server ──
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_prefix": "TASKWEAVE_", "env_file": ".env", "extra": "ignore"}


config = TaskweaveConfig()
