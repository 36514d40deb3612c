"""
Client configuration models and loaders.

Profiles live in a YAML mapping keyed by profile name::

    default:
      role: VIEWER
      channelARN: arn:aws:kinesisvideo:us-west-2:123456789012:channel/demo/1234567890123
      channelEndpoint: wss://v-1234abcd.kinesisvideo.us-west-2.amazonaws.com
      region: us-west-2
      clientId: viewer-1

Credentials are normally left out of the file and picked up from the standard
``AWS_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .errors import ConfigurationError
from .role import Role
from .utils.validation import is_nil, validate_value_nil, validate_value_non_nil

LOG = logging.getLogger(__name__)

ENV_PROFILES_VAR = "RTCSIGNAL_PROFILES"
DEFAULT_PROFILE = "default"

# Environment variable -> configuration key.  Earlier names win.
ENV_FIELDS = (
    ("RTCSIGNAL_ROLE", "role"),
    ("RTCSIGNAL_CHANNEL_ARN", "channel_arn"),
    ("RTCSIGNAL_CHANNEL_ENDPOINT", "channel_endpoint"),
    ("RTCSIGNAL_CLIENT_ID", "client_id"),
    ("AWS_REGION", "region"),
    ("AWS_DEFAULT_REGION", "region"),
)
ENV_CREDENTIAL_FIELDS = (
    ("AWS_ACCESS_KEY_ID", "access_key_id"),
    ("AWS_SECRET_ACCESS_KEY", "secret_access_key"),
    ("AWS_SESSION_TOKEN", "session_token"),
)


class Credentials(BaseModel):
    access_key_id: str = Field(validation_alias=AliasChoices("access_key_id", "accessKeyId"))
    secret_access_key: SecretStr = Field(
        validation_alias=AliasChoices("secret_access_key", "secretAccessKey")
    )
    session_token: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("session_token", "sessionToken"),
    )
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @field_validator("access_key_id", mode="before")
    @classmethod
    def _require_access_key(cls, value: object) -> object:
        validate_value_non_nil(value, "credentials.access_key_id")
        return value

    @field_validator("secret_access_key", mode="before")
    @classmethod
    def _require_secret_key(cls, value: object) -> object:
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        validate_value_non_nil(value, "credentials.secret_access_key")
        return value

    @field_validator("session_token", mode="before")
    @classmethod
    def _empty_token_is_none(cls, value: object) -> object:
        return None if is_nil(value) else value


class SignalingClientConfig(BaseModel):
    """
    Immutable snapshot of everything a :class:`~rtcsignal.client.SignalingClient` needs.
    """

    role: Role
    channel_arn: str = Field(validation_alias=AliasChoices("channel_arn", "channelARN", "channelArn"))
    channel_endpoint: str = Field(
        validation_alias=AliasChoices("channel_endpoint", "channelEndpoint", "endpoint")
    )
    region: str
    client_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("client_id", "clientId"))
    credentials: Optional[Credentials] = None
    request_signer: Optional[Any] = Field(
        default=None,
        validation_alias=AliasChoices("request_signer", "requestSigner"),
        exclude=True,
    )
    system_clock_offset: float = Field(
        default=0.0,
        validation_alias=AliasChoices("system_clock_offset", "systemClockOffset"),
    )
    max_pending_candidates: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("max_pending_candidates", "maxPendingCandidates"),
    )
    model_config = ConfigDict(frozen=True, populate_by_name=True, arbitrary_types_allowed=True)

    @field_validator("role", mode="before")
    @classmethod
    def _normalise_role(cls, value: object) -> object:
        validate_value_non_nil(value, "role")
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("channel_arn", "channel_endpoint", "region", mode="before")
    @classmethod
    def _require_value(cls, value: object, info: ValidationInfo) -> object:
        validate_value_non_nil(value, info.field_name)
        return value

    @field_validator("client_id", mode="before")
    @classmethod
    def _empty_client_id_is_none(cls, value: object) -> object:
        return None if is_nil(value) else value

    @field_validator("max_pending_candidates")
    @classmethod
    def _validate_cap(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("max_pending_candidates must be positive")
        return value

    @model_validator(mode="after")
    def _check_role_and_signing(self) -> "SignalingClientConfig":
        if self.role is Role.VIEWER:
            validate_value_non_nil(self.client_id, "client_id")
        else:
            validate_value_nil(self.client_id, "client_id")
        if self.request_signer is None:
            validate_value_non_nil(self.credentials, "credentials")
        elif not callable(getattr(self.request_signer, "get_signed_url", None)):
            raise ConfigurationError("request_signer must provide get_signed_url()")
        return self


def load_profiles(path: os.PathLike[str] | str) -> Dict[str, Dict[str, Any]]:
    """
    Read every profile from the YAML file at ``path``.
    """

    with Path(path).expanduser().open("r", encoding="utf-8") as handle:
        profiles = yaml.safe_load(handle) or {}
    if not isinstance(profiles, dict):
        raise ConfigurationError(f"profiles file {path} must contain a mapping")
    return profiles


def _read_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for var, key in ENV_FIELDS:
        if env.get(var) and key not in values:
            values[key] = env[var]
    credentials = {key: env[var] for var, key in ENV_CREDENTIAL_FIELDS if env.get(var)}
    if credentials:
        values["credentials"] = credentials
    return values


def _merge(base: Dict[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if value is None:
            continue
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def _canonical_keys(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Map camelCase aliases onto field names so sources merge key by key."""

    aliases: Dict[str, str] = {}
    for name, field in SignalingClientConfig.model_fields.items():
        choices = getattr(field.validation_alias, "choices", None) or ()
        for alias in choices:
            aliases[str(alias)] = name
    credential_aliases: Dict[str, str] = {}
    for name, field in Credentials.model_fields.items():
        for alias in getattr(field.validation_alias, "choices", None) or ():
            credential_aliases[str(alias)] = name

    result: Dict[str, Any] = {}
    for key, value in values.items():
        name = aliases.get(key, key)
        if name == "credentials" and isinstance(value, Mapping):
            value = {credential_aliases.get(k, k): v for k, v in value.items()}
        result[name] = value
    return result


def load_config(
    path: os.PathLike[str] | str | None = None,
    *,
    profile: str = DEFAULT_PROFILE,
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> SignalingClientConfig:
    """
    Build a configuration from a YAML profile, the environment and ``overrides``.

    Later sources win: profile < environment < overrides.  ``None`` values in
    ``overrides`` are ignored so unset CLI flags do not mask other sources.
    """

    env = os.environ if env is None else env
    if path is None and env.get(ENV_PROFILES_VAR):
        path = env[ENV_PROFILES_VAR]

    values: Dict[str, Any] = {}
    if path is not None:
        profiles = load_profiles(path)
        if profile not in profiles:
            raise ConfigurationError(f"profile '{profile}' not found in {path}")
        values = _canonical_keys(profiles[profile] or {})
        LOG.debug("Loaded profile %s from %s", profile, path)

    values = _merge(values, _read_env(env))
    if overrides:
        values = _merge(values, _canonical_keys(overrides))
    return SignalingClientConfig.model_validate(values)


__all__ = [
    "Credentials",
    "SignalingClientConfig",
    "load_config",
    "load_profiles",
]
