"""
oauth2_config.py — settings for the OAuth2 login flow.

Loaded once at startup from oauth2.yaml (or the file named by
$OAUTH2_CONFIG), then overridden per field by OAUTH2_<FIELD> environment
variables. The result is immutable for the life of the process.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from oauth2_errors import ConfigurationError

ENV_PREFIX = "OAUTH2_"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "oauth2.yaml"

_URL_FIELDS = ("authorization_endpoint", "token_endpoint",
               "userinfo_endpoint", "redirect_uri")
_REQUIRED_FIELDS = _URL_FIELDS + ("client_id", "client_secret")
_http_url = TypeAdapter(AnyHttpUrl)


@dataclass(frozen=True)
class OAuth2Config:
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scope: str = "email profile"
    username_claim: str = "username"
    groups_claim: str = "groups"
    max_state_validity: int = 10  # minutes

    def __repr__(self) -> str:
        shown = ", ".join(
            f"{f.name}={'***' if f.name == 'client_secret' else repr(getattr(self, f.name))}"
            for f in fields(self)
        )
        return f"OAuth2Config({shown})"

    @property
    def max_state_validity_seconds(self) -> int:
        return self.max_state_validity * 60


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"OAuth2 config not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid {path.name}: expected a mapping at top level")
    return raw


def _env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    known = {f.name for f in fields(OAuth2Config)}
    overrides = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in known:
            overrides[name] = value
    return overrides


def build_config(values: Mapping[str, Any]) -> OAuth2Config:
    """Validate a raw mapping and freeze it into an :class:`OAuth2Config`."""
    known = {f.name for f in fields(OAuth2Config)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown OAuth2 setting(s): {', '.join(unknown)}")

    cleaned: dict[str, Any] = {}
    for name, value in values.items():
        if value is None:
            continue
        cleaned[name] = value if name == "max_state_validity" else str(value).strip()

    missing = [name for name in _REQUIRED_FIELDS if not cleaned.get(name)]
    if missing:
        raise ConfigurationError(f"Missing required OAuth2 setting(s): {', '.join(missing)}")

    for name in _URL_FIELDS:
        try:
            _http_url.validate_python(cleaned[name])
        except ValidationError:
            raise ConfigurationError(f"'{name}' must be an absolute http(s) URL")

    if "max_state_validity" in cleaned:
        raw = cleaned["max_state_validity"]
        try:
            minutes = int(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"'max_state_validity' must be an integer, got {raw!r}")
        if isinstance(raw, bool) or minutes <= 0:
            raise ConfigurationError("'max_state_validity' must be a positive number of minutes")
        cleaned["max_state_validity"] = minutes

    for name in ("scope", "username_claim", "groups_claim"):
        if name in cleaned and not cleaned[name]:
            raise ConfigurationError(f"'{name}' must not be empty")

    return OAuth2Config(**cleaned)


def load_config(path: Path | str | None = None,
                environ: Mapping[str, str] | None = None) -> OAuth2Config:
    """Load settings from YAML plus environment overrides."""
    if environ is None:
        environ = os.environ
    if path is None and environ.get("OAUTH2_CONFIG"):
        path = environ["OAUTH2_CONFIG"]

    values: dict[str, Any] = {}
    if path is not None:
        values.update(_read_yaml(Path(path)))
    elif DEFAULT_CONFIG_PATH.exists():
        values.update(_read_yaml(DEFAULT_CONFIG_PATH))
    values.update(_env_overrides(environ))
    return build_config(values)
