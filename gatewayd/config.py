"""
Configuration for the gateway supervisor.

Loads settings from environment variables with sensible defaults.
Supervisor bookkeeping lives in ~/.gatewayd/ unless GATEWAYD_DATA_DIR is set;
the gateway's own config, workspace and backup mount are separate paths.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_list(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Config:
    """Supervisor configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("GATEWAYD_DATA_DIR", str(Path.home() / ".gatewayd")))
    db_path: Path = None
    logs_dir: Path = None
    supervisor_log: Path = None

    # Gateway filesystem layout
    config_dir: Path = Path(os.environ.get("GATEWAY_CONFIG_DIR", "/root/.clawdbot"))
    config_file: Path = None
    template_dir: Path = Path(os.environ.get("GATEWAY_TEMPLATE_DIR", "/root/.clawdbot-templates"))
    workspace_dir: Path = Path(os.environ.get("GATEWAY_WORKSPACE_DIR", "/root/clawd"))
    backup_dir: Path = Path(os.environ.get("BACKUP_DIR", "/data/moltbot"))
    lock_globs: list[str] = field(
        default_factory=lambda: _env_list("GATEWAY_LOCK_GLOBS", "/tmp/clawdbot*.lock")
    )

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
    log_retention_days: int = int(os.environ.get("LOG_RETENTION_DAYS", "7"))

    # Server
    host: str = os.environ.get("GATEWAYD_HOST", "0.0.0.0")
    port: int = int(os.environ.get("GATEWAYD_PORT", "8080"))

    # Gateway process
    gateway_bin: str = os.environ.get("GATEWAY_BIN", "clawdbot")
    gateway_port: int = int(os.environ.get("GATEWAY_PORT", "18789"))
    gateway_bind_mode: str = os.environ.get("GATEWAY_BIND_MODE", "lan")
    gateway_token: str = os.environ.get("CLAWDBOT_GATEWAY_TOKEN", "")
    dev_mode: bool = _env_bool("CLAWDBOT_DEV_MODE")
    trusted_proxies: list[str] = field(
        default_factory=lambda: _env_list("TRUSTED_PROXIES", "10.1.0.0")
    )
    stop_gateway_on_exit: bool = _env_bool("STOP_GATEWAY_ON_EXIT")

    # Timeouts (seconds)
    health_timeout: float = float(os.environ.get("GATEWAY_HEALTH_TIMEOUT", "5"))
    startup_timeout: float = float(os.environ.get("GATEWAY_STARTUP_TIMEOUT", "60"))
    restart_grace: float = float(os.environ.get("RESTART_GRACE_SECONDS", "2"))
    stop_timeout: float = float(os.environ.get("GATEWAY_STOP_TIMEOUT", "10"))
    session_cli_timeout: float = float(os.environ.get("SESSION_CLI_TIMEOUT", "15"))

    # Background loops
    monitor_interval: int = int(os.environ.get("MONITOR_INTERVAL", "30"))
    backup_sync_interval: int = int(os.environ.get("BACKUP_SYNC_INTERVAL", "300"))
    max_restart_attempts: int = int(os.environ.get("MAX_RESTART_ATTEMPTS", "3"))

    # Inference providers
    ai_gateway_base_url: str = os.environ.get("AI_GATEWAY_BASE_URL", "")
    openai_base_url: str = os.environ.get("OPENAI_BASE_URL", "")
    anthropic_base_url: str = os.environ.get("ANTHROPIC_BASE_URL", "")
    ai_gateway_api_key: str = os.environ.get("AI_GATEWAY_API_KEY", "")
    openai_api_key: str = os.environ.get("OPENAI_API_KEY", "")
    anthropic_api_key: str = os.environ.get("ANTHROPIC_API_KEY", "")
    mistral_api_key: str = os.environ.get("MISTRAL_API_KEY", "")
    use_workers_ai: bool = _env_bool("USE_WORKERS_AI")
    managed_inference_url: str = os.environ.get("MANAGED_INFERENCE_URL", "")

    # Messaging channels
    telegram_bot_token: str = os.environ.get("TELEGRAM_BOT_TOKEN", "")
    telegram_dm_policy: str = os.environ.get("TELEGRAM_DM_POLICY", "pairing")
    discord_bot_token: str = os.environ.get("DISCORD_BOT_TOKEN", "")
    discord_dm_policy: str = os.environ.get("DISCORD_DM_POLICY", "pairing")
    slack_bot_token: str = os.environ.get("SLACK_BOT_TOKEN", "")
    slack_app_token: str = os.environ.get("SLACK_APP_TOKEN", "")

    def get_base_url(self) -> str:
        """The inference base URL override, first one set wins."""
        url = self.ai_gateway_base_url or self.openai_base_url or self.anthropic_base_url
        return url.rstrip("/")

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.db_path = self.data_dir / "gatewayd.db"
        self.logs_dir = self.data_dir / "logs"
        self.supervisor_log = self.data_dir / "gatewayd.log"
        self.config_file = self.config_dir / "clawdbot.json"

        # Create directories
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)


config = Config()
