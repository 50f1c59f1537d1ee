import os
import tempfile
from pathlib import Path

import pytest

# Must be set before gatewayd.config is imported
_DATA_DIR = tempfile.mkdtemp(prefix="gatewayd-test-")
os.environ["GATEWAYD_DATA_DIR"] = _DATA_DIR
os.environ["GATEWAY_CONFIG_DIR"] = str(Path(_DATA_DIR) / "clawdbot")
os.environ["BACKUP_DIR"] = str(Path(_DATA_DIR) / "backup")
os.environ["CLAWDBOT_GATEWAY_TOKEN"] = ""

from gatewayd.config import Config  # noqa: E402
from gatewayd.models import database, initialize_db  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    """Config rooted in a temporary directory, with no provider env applied."""
    return Config(
        data_dir=tmp_path / "data",
        config_dir=tmp_path / "clawdbot",
        template_dir=tmp_path / "templates",
        workspace_dir=tmp_path / "clawd",
        backup_dir=tmp_path / "backup",
        lock_globs=[str(tmp_path / "clawdbot*.lock")],
        gateway_token="",
        dev_mode=False,
        trusted_proxies=["10.1.0.0"],
        restart_grace=0,
        startup_timeout=2,
        stop_timeout=1,
        ai_gateway_base_url="",
        openai_base_url="",
        anthropic_base_url="",
        ai_gateway_api_key="",
        openai_api_key="",
        anthropic_api_key="",
        mistral_api_key="",
        use_workers_ai=False,
        managed_inference_url="",
        telegram_bot_token="",
        discord_bot_token="",
        slack_bot_token="",
        slack_app_token="",
    )


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database for the registry and event log."""
    initialize_db(tmp_path / "test.db")
    yield database
    database.close()
