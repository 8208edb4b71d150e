from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from authcore.auth.errors import ConfigError

logger = logging.getLogger(__name__)

# Keys of the older nested descriptor shape that were renamed.
_LEGACY_KEYS = {
    "type": "kind",
    "name": "displayName",
    "authUrl": "authorizeUrl",
    "userInfoUrl": "userinfoUrl",
    "timeout": "timeoutMs",
}


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)


class LocalUserEntry(_Model):
    username: str = Field(min_length=1)
    password_hash: str = Field(min_length=1)
    display_name: Optional[str] = None


class _DescriptorBase(_Model):
    id: str = Field(min_length=1)
    display_name: Optional[str] = None
    enabled: bool = True
    icon: Optional[str] = None
    # Method to offer when this one is unavailable on the current platform.
    fallback: Optional[str] = None

    @property
    def name(self) -> str:
        return self.display_name or self.id


class LocalDescriptor(_DescriptorBase):
    kind: Literal["local"] = "local"
    users: List[LocalUserEntry] = Field(default_factory=list)


class WebAuthnDescriptor(_DescriptorBase):
    kind: Literal["webauthn"] = "webauthn"
    rp_id: str = "localhost"
    rp_name: str = "authcore"
    # Origins accepted in clientDataJSON; empty disables the origin check.
    origins: List[str] = Field(default_factory=list)
    authenticator_attachment: Optional[Literal["platform", "cross-platform"]] = "platform"
    require_resident_key: bool = False
    user_verification: Literal["required", "preferred", "discouraged"] = "preferred"
    attestation: Literal["none", "indirect", "direct", "enterprise"] = "none"
    timeout_ms: int = Field(60000, gt=0)


class OAuth2Descriptor(_DescriptorBase):
    kind: Literal["oauth2"] = "oauth2"
    client_id: str = Field(min_length=1)
    authorize_url: str = Field(min_length=1)
    userinfo_url: Optional[str] = None
    scope: str = ""
    redirect_uri: Optional[str] = None
    response_mode: Optional[str] = None
    extra_params: Dict[str, str] = Field(default_factory=dict)


ProviderDescriptor = Annotated[
    Union[LocalDescriptor, WebAuthnDescriptor, OAuth2Descriptor],
    Field(discriminator="kind"),
]

_descriptor_adapter: TypeAdapter[Any] = TypeAdapter(ProviderDescriptor)


class RateLimitConfig(_Model):
    enabled: bool = True
    max_attempts: int = Field(5, ge=1)
    window_ms: int = Field(900000, ge=1)  # 15 min


class SecurityConfig(_Model):
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)


class SessionConfig(_Model):
    key: str = "authcore_session"
    ttl_seconds: int = Field(86400, ge=60)
    secret: Optional[str] = None


class ExchangeConfig(_Model):
    # Backend that holds the OAuth2 client secrets and performs code-for-token exchange.
    token_exchange_url: Optional[str] = None
    # Backend that verifies WebAuthn attestations/assertions.
    credential_verifier_url: Optional[str] = None
    timeout_seconds: float = Field(10.0, gt=0)


def normalize_descriptor(provider_id: str, raw: Any) -> Dict[str, Any]:
    """
    Flatten one provider entry into the descriptor shape.

    Accepts both flat entries and the nested `{type, name, config: {...}}` shape.
    `kind` is inferred from the id for `local` and `webauthn`.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"provider {provider_id!r} must be an object")
    out: Dict[str, Any] = {}
    nested = raw.get("config")
    for src in (raw, nested if isinstance(nested, dict) else {}):
        for k, v in src.items():
            if k == "config":
                continue
            out[_LEGACY_KEYS.get(k, k)] = v
    out["id"] = provider_id
    if not out.get("kind") and provider_id in ("local", "webauthn"):
        out["kind"] = provider_id
    return out


def parse_descriptor(provider_id: str, raw: Any) -> Union[LocalDescriptor, WebAuthnDescriptor, OAuth2Descriptor]:
    try:
        return _descriptor_adapter.validate_python(normalize_descriptor(provider_id, raw))
    except ValidationError as e:
        raise ConfigError(f"invalid provider {provider_id!r}: {e.error_count()} validation error(s)") from e


class AuthSettings(_Model):
    providers: Dict[str, ProviderDescriptor] = Field(default_factory=dict)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    public_base_url: Optional[str] = None
    default_method: Optional[str] = None
    state_path: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Older layout wraps everything in `authentication`.
        wrapped = data.pop("authentication", None)
        if isinstance(wrapped, dict):
            data = {**wrapped, **data}
        providers = data.get("providers") or {}
        if not isinstance(providers, dict):
            raise ValueError("providers must be an object keyed by provider id")
        data["providers"] = {pid: normalize_descriptor(pid, p) for pid, p in providers.items()}

        # Session knobs used to live on the local provider.
        local_cfg = (providers.get("local") or {}).get("config") if isinstance(providers.get("local"), dict) else None
        if isinstance(local_cfg, dict):
            session = dict(data.get("session") or {})
            if "sessionKey" in local_cfg and "key" not in session:
                session["key"] = local_cfg["sessionKey"]
            if "tokenExpiry" in local_cfg and "ttlSeconds" not in session:
                session["ttlSeconds"] = max(60, int(local_cfg["tokenExpiry"]) // 1000)
            data["session"] = session
        return data

    def descriptors(self) -> List[Union[LocalDescriptor, WebAuthnDescriptor, OAuth2Descriptor]]:
        return list(self.providers.values())


def parse_settings(raw: Dict[str, Any]) -> AuthSettings:
    try:
        return AuthSettings.model_validate(raw)
    except ConfigError:
        raise
    except ValidationError as e:
        raise ConfigError(f"invalid auth configuration: {e.error_count()} validation error(s)") from e


def _read_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"auth config file not found: {path}")
    text = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"auth config file {path} could not be parsed") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"auth config file {path} must contain an object")
    return data


def _env(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


@lru_cache(maxsize=1)
def load_auth_config() -> AuthSettings:
    """
    Load authentication configuration.

    Reads AUTH_CONFIG_PATH (YAML, or JSON by extension) when set, then applies
    environment overrides: AUTH_SESSION_SECRET, AUTH_SESSION_TTL_SECONDS,
    AUTH_PUBLIC_BASE_URL, AUTH_TOKEN_EXCHANGE_URL, AUTH_CREDENTIAL_VERIFIER_URL,
    AUTH_STATE_PATH.
    """
    path = _env("AUTH_CONFIG_PATH")
    raw: Dict[str, Any] = _read_config_file(path) if path else {}
    if isinstance(raw.get("authentication"), dict):
        raw = {**raw.pop("authentication"), **raw}

    session = dict(raw.get("session") or {})
    if _env("AUTH_SESSION_SECRET"):
        session["secret"] = _env("AUTH_SESSION_SECRET")
    ttl_raw = _env("AUTH_SESSION_TTL_SECONDS")
    if ttl_raw:
        try:
            session["ttlSeconds"] = max(60, int(float(ttl_raw)))
        except ValueError:
            logger.warning("Ignoring invalid AUTH_SESSION_TTL_SECONDS=%r", ttl_raw)
    if session:
        raw["session"] = session

    exchange = dict(raw.get("exchange") or {})
    if _env("AUTH_TOKEN_EXCHANGE_URL"):
        exchange["tokenExchangeUrl"] = _env("AUTH_TOKEN_EXCHANGE_URL")
    if _env("AUTH_CREDENTIAL_VERIFIER_URL"):
        exchange["credentialVerifierUrl"] = _env("AUTH_CREDENTIAL_VERIFIER_URL")
    if exchange:
        raw["exchange"] = exchange

    if _env("AUTH_PUBLIC_BASE_URL"):
        raw["publicBaseUrl"] = _env("AUTH_PUBLIC_BASE_URL")
    if _env("AUTH_STATE_PATH"):
        raw["statePath"] = _env("AUTH_STATE_PATH")

    settings = parse_settings(raw)
    logger.info(
        "Auth config: providers=%s rate_limit=%s session_key=%s",
        ",".join(sorted(settings.providers)) or "-",
        settings.security.rate_limit.enabled,
        settings.session.key,
    )
    return settings
