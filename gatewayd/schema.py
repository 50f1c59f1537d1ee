"""
Typed view of the gateway's JSON configuration document.

Keys the supervisor does not manage are kept as extras at every level so a
hydrate pass never drops settings the gateway itself wrote.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Section(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ModelEntry(_Section):
    id: str
    name: str
    context_window: Optional[int] = Field(None, alias="contextWindow")


class Provider(_Section):
    base_url: Optional[str] = Field(None, alias="baseUrl")
    api: Optional[str] = None
    api_key: Optional[str] = Field(None, alias="apiKey")
    models: list[ModelEntry] = Field(default_factory=list)


class ModelsSection(_Section):
    providers: dict[str, Provider] = Field(default_factory=dict)


class ModelAlias(_Section):
    alias: Optional[str] = None


class PrimaryModel(_Section):
    primary: Optional[str] = None


class AgentDefaults(_Section):
    workspace: Optional[str] = None
    model: PrimaryModel = Field(default_factory=PrimaryModel)
    models: dict[str, ModelAlias] = Field(default_factory=dict)


class Agents(_Section):
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


class GatewayAuth(_Section):
    token: Optional[str] = None


class ControlUi(_Section):
    allow_insecure_auth: Optional[bool] = Field(None, alias="allowInsecureAuth")


class EndpointToggle(_Section):
    enabled: bool = False


class HttpEndpoints(_Section):
    chat_completions: Optional[EndpointToggle] = Field(None, alias="chatCompletions")


class GatewayHttp(_Section):
    endpoints: HttpEndpoints = Field(default_factory=HttpEndpoints)


class GatewaySettings(_Section):
    port: Optional[int] = None
    mode: Optional[str] = None
    trusted_proxies: Optional[list[str]] = Field(None, alias="trustedProxies")
    auth: Optional[GatewayAuth] = None
    control_ui: Optional[ControlUi] = Field(None, alias="controlUi")
    http: GatewayHttp = Field(default_factory=GatewayHttp)


class GatewayConfig(_Section):
    """The whole clawdbot.json document."""

    agents: Agents = Field(default_factory=Agents)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    models: Optional[ModelsSection] = None
    channels: dict[str, dict] = Field(default_factory=dict)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def provider_is_valid(entry) -> bool:
    """A provider entry is usable only if every model carries an id and a name."""
    if not isinstance(entry, dict):
        return False
    models = entry.get("models", [])
    if not isinstance(models, list):
        return False
    return all(isinstance(m, dict) and m.get("id") and m.get("name") for m in models)
