"""
Config hydration for the gateway.

Merges the persisted clawdbot.json with environment-derived settings once per
startup: picks the inference provider and model catalog, forces the
supervisor-owned gateway fields, and wires up messaging channels.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from .config import Config, config
from .exceptions import ConfigParseFailure
from .models import record_event
from .schema import (
    ControlUi,
    EndpointToggle,
    GatewayAuth,
    GatewayConfig,
    ModelAlias,
    ModelEntry,
    ModelsSection,
    Provider,
    provider_is_valid,
)

logger = logging.getLogger(__name__)

MIN_CONTEXT_WINDOW = 16000
GATEWAY_MODE = "local"
OPENAI_API = "openai-responses"
ANTHROPIC_API = "anthropic-messages"
ANTHROPIC_URL = "https://api.anthropic.com"
MISTRAL_URL = "https://api.mistral.ai/v1"
MANAGED_INFERENCE_PATH = "/ai/v1"
DEFAULT_PRIMARY = "anthropic/claude-opus-4-5"

# (model id, display name, context window, alias)
WORKERS_AI_CATALOG = [
    ("llama-3.1-8b-instruct", "Llama 3.1 8B", 128000, "Llama 3.1 8B"),
    ("mistral-7b-instruct", "Mistral 7B", 32000, "Mistral 7B"),
    ("llama-3.2-3b-instruct", "Llama 3.2 3B", 8192, "Llama 3.2 3B"),
]
GROQ_CATALOG = [
    ("llama-3.3-70b-versatile", "Llama 3.3 70B", 128000, "Llama 3.3 70B"),
    ("llama-3.1-8b-instant", "Llama 3.1 8B", 128000, "Llama 3.1 8B"),
    ("mixtral-8x7b-32768", "Mixtral 8x7B", 32768, "Mixtral 8x7B"),
]
MISTRAL_CATALOG = [
    ("mistral-small-latest", "Mistral Small", 32000, "Mistral Small"),
    ("mistral-large-latest", "Mistral Large", 128000, "Mistral Large"),
]
OPENAI_CATALOG = [
    ("gpt-5.2", "GPT-5.2", 200000, "GPT-5.2"),
    ("gpt-5", "GPT-5", 200000, "GPT-5"),
    ("gpt-4.5-preview", "GPT-4.5 Preview", 128000, "GPT-4.5"),
]
ANTHROPIC_GATEWAY_CATALOG = [
    ("claude-opus-4-5-20251101", "Claude Opus 4.5", 200000, "Opus 4.5"),
    ("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5", 200000, "Sonnet 4.5"),
    ("claude-haiku-4-5-20251001", "Claude Haiku 4.5", 200000, "Haiku 4.5"),
]
ANTHROPIC_DIRECT_CATALOG = [
    ("claude-3-5-sonnet-latest", "Claude 3.5 Sonnet", 200000, "Sonnet 3.5"),
    ("claude-3-5-haiku-latest", "Claude 3.5 Haiku", 200000, "Haiku 3.5"),
    ("claude-3-opus-latest", "Claude 3 Opus", 200000, "Opus 3"),
]


@dataclass
class ProviderSelection:
    """Outcome of provider selection, applied to the document in one step."""

    rule: str
    primary: str
    providers: dict[str, Provider] = field(default_factory=dict)
    aliases: dict[str, str] = field(default_factory=dict)

    def add(self, name: str, base_url: str, api: str, api_key: Optional[str], catalog: list):
        self.providers[name] = Provider(
            base_url=base_url,
            api=api,
            api_key=api_key or None,
            models=[ModelEntry(id=i, name=n, context_window=ctx) for i, n, ctx, _ in catalog],
        )
        for model_id, _, _, alias in catalog:
            self.aliases[f"{name}/{model_id}"] = alias


def first_capable(catalog: list, min_context: int = MIN_CONTEXT_WINDOW) -> str:
    """Id of the first catalog model with a large enough context window."""
    for model_id, _, context_window, _ in catalog:
        if context_window >= min_context:
            return model_id
    raise ValueError(f"No model in catalog meets {min_context} token context window")


def _host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def is_managed_inference(settings: Config, base_url: str) -> bool:
    return settings.use_workers_ai or MANAGED_INFERENCE_PATH in base_url


def is_groq(base_url: str) -> bool:
    return "groq.com" in _host(base_url)


def managed_base_url(settings: Config, base_url: str) -> str:
    """The internal proxy URL, unless the override already points at it."""
    if MANAGED_INFERENCE_PATH in base_url or not settings.managed_inference_url:
        return base_url
    return settings.managed_inference_url.rstrip("/")


def select_provider(settings: Config = config) -> ProviderSelection:
    """Pick the inference provider. Rules are checked in order, first match wins."""
    base_url = settings.get_base_url()

    if is_managed_inference(settings, base_url):
        selection = ProviderSelection(rule="managed", primary="")
        selection.add(
            "openai",
            managed_base_url(settings, base_url),
            OPENAI_API,
            settings.openai_api_key or "workers-ai",
            WORKERS_AI_CATALOG,
        )
        selection.primary = f"openai/{first_capable(WORKERS_AI_CATALOG)}"
        return selection

    if base_url and ("/openai" in base_url or is_groq(base_url)):
        api_key = settings.ai_gateway_api_key or settings.openai_api_key
        if is_groq(base_url):
            selection = ProviderSelection(rule="groq", primary="openai/llama-3.3-70b-versatile")
            selection.add("openai", base_url, OPENAI_API, api_key, GROQ_CATALOG)
            if settings.mistral_api_key:
                # Mistral is primary whenever its key is present
                selection.add("mistral", MISTRAL_URL, OPENAI_API, settings.mistral_api_key, MISTRAL_CATALOG)
                selection.primary = "mistral/mistral-small-latest"
            return selection

        selection = ProviderSelection(rule="openai", primary=f"openai/{OPENAI_CATALOG[0][0]}")
        selection.add("openai", base_url, OPENAI_API, api_key, OPENAI_CATALOG)
        return selection

    if base_url:
        selection = ProviderSelection(
            rule="anthropic-gateway", primary=f"anthropic/{ANTHROPIC_GATEWAY_CATALOG[0][0]}"
        )
        # Key is optional behind an override URL
        selection.add(
            "anthropic", base_url, ANTHROPIC_API, settings.anthropic_api_key, ANTHROPIC_GATEWAY_CATALOG
        )
        return selection

    if settings.anthropic_api_key:
        selection = ProviderSelection(
            rule="anthropic", primary=f"anthropic/{ANTHROPIC_DIRECT_CATALOG[0][0]}"
        )
        selection.add(
            "anthropic", ANTHROPIC_URL, ANTHROPIC_API, settings.anthropic_api_key, ANTHROPIC_DIRECT_CATALOG
        )
        return selection

    return ProviderSelection(rule="default", primary=DEFAULT_PRIMARY)


def parse_raw(text: str) -> dict:
    """Parse persisted config text. Raises ConfigParseFailure if it is not a JSON object."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigParseFailure(f"Config is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigParseFailure(f"Config must be a JSON object, got {type(data).__name__}")
    return data


def load_document(path: Path) -> dict:
    """Read the persisted config, or {} when it is missing or malformed."""
    try:
        return parse_raw(Path(path).read_text())
    except FileNotFoundError:
        logger.info(f"No config at {path}, starting with empty config")
    except (OSError, UnicodeDecodeError, ConfigParseFailure) as e:
        logger.warning(f"Starting with empty config: {e}")
    return {}


def drop_invalid_providers(raw: dict) -> dict:
    """Remove provider entries that would not validate, keeping the rest of the document."""
    models = raw.get("models")
    providers = models.get("providers") if isinstance(models, dict) else None
    if not isinstance(providers, dict):
        return raw

    for name in list(providers):
        entry = providers[name]
        if not provider_is_valid(entry):
            logger.info(f"Removing broken provider config '{name}' (missing model id or name)")
            del providers[name]
            continue
        try:
            Provider.model_validate(entry)
        except ValidationError as e:
            logger.info(f"Removing broken provider config '{name}': {e.error_count()} invalid field(s)")
            del providers[name]
    return raw


def to_document(raw: dict) -> GatewayConfig:
    """Validate a raw dict into a GatewayConfig, falling back to an empty one."""
    try:
        return GatewayConfig.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Config does not match the expected shape, starting with empty config: {e}")
        return GatewayConfig()


def apply_selection(doc: GatewayConfig, selection: ProviderSelection):
    if selection.providers:
        if doc.models is None:
            doc.models = ModelsSection()
        doc.models.providers.update(selection.providers)

    defaults = doc.agents.defaults
    for model_ref, alias in selection.aliases.items():
        defaults.models[model_ref] = ModelAlias(alias=alias)
    defaults.model.primary = selection.primary


def apply_gateway_policy(doc: GatewayConfig, settings: Config = config):
    """Overwrite the fields the supervisor owns, whatever was persisted."""
    gateway = doc.gateway
    gateway.port = settings.gateway_port
    gateway.mode = GATEWAY_MODE
    gateway.trusted_proxies = list(settings.trusted_proxies)
    gateway.http.endpoints.chat_completions = EndpointToggle(enabled=True)

    if settings.gateway_token:
        if gateway.auth is None:
            gateway.auth = GatewayAuth()
        gateway.auth.token = settings.gateway_token

    if settings.dev_mode:
        if gateway.control_ui is None:
            gateway.control_ui = ControlUi()
        gateway.control_ui.allow_insecure_auth = True

    if not doc.agents.defaults.workspace:
        doc.agents.defaults.workspace = str(settings.workspace_dir)


def apply_channels(doc: GatewayConfig, settings: Config = config):
    channels = doc.channels

    if settings.telegram_bot_token:
        telegram = channels.setdefault("telegram", {})
        telegram["botToken"] = settings.telegram_bot_token
        telegram["enabled"] = True
        telegram["dmPolicy"] = settings.telegram_dm_policy

    if settings.discord_bot_token:
        discord = channels.setdefault("discord", {})
        discord["token"] = settings.discord_bot_token
        discord["enabled"] = True
        dm = discord.get("dm") if isinstance(discord.get("dm"), dict) else {}
        dm["policy"] = settings.discord_dm_policy
        discord["dm"] = dm

    if settings.slack_bot_token and settings.slack_app_token:
        slack = channels.setdefault("slack", {})
        slack["botToken"] = settings.slack_bot_token
        slack["appToken"] = settings.slack_app_token
        slack["enabled"] = True


def hydrate(raw: dict, settings: Config = config) -> tuple[GatewayConfig, ProviderSelection]:
    """Produce the updated document from a persisted one and the environment."""
    doc = to_document(drop_invalid_providers(raw))
    selection = select_provider(settings)
    apply_selection(doc, selection)
    apply_gateway_policy(doc, settings)
    apply_channels(doc, settings)
    return doc, selection


def write_document(path: Path, doc: GatewayConfig):
    """Write the document atomically so the gateway never reads a partial file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".clawdbot-", suffix=".json")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(doc.to_json_dict(), f, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise


def hydrate_file(path: Path = None, settings: Config = config) -> ProviderSelection:
    """Load, hydrate and rewrite the config file. Returns the provider selection."""
    path = Path(path or settings.config_file)
    doc, selection = hydrate(load_document(path), settings)
    write_document(path, doc)

    logger.info(f"Hydrated {path}: provider rule '{selection.rule}', primary model {selection.primary}")
    record_event("hydrate", f"rule={selection.rule} primary={selection.primary}")
    return selection
