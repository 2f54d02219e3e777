# urloracle/config.py
from __future__ import annotations

import logging
import os
from typing import Any, Dict, FrozenSet, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .identity import GITHUB_ISSUER, GITHUB_JWKS_URL
from .utils import canonical_json_bytes, sha256_hex


_log = logging.getLogger(__name__)

CONFIG_PATH_ENV = "URL_ORACLE_CONFIG"
ENV_PREFIX = "URL_ORACLE_"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_str(env: Mapping[str, str], name: str, default: Optional[str]) -> Optional[str]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Missing path is not an error (returns {}).
      - Unreadable or unparsable files are errors.
      - Only a dict at top-level is accepted.
      - Non-scalar values are coerced via str() to avoid arbitrary structures.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to load YAML config from {path}: {e}") from e
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ConfigError(f"YAML config {path} must be a mapping at top level")
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

# Bearer material; excluded from config_hash() and never logged.
_SECRET_FIELDS: FrozenSet[str] = frozenset({"id_token_request_token", "caller_token"})


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Identity ---------------------------------------------------------
    oidc_issuer: str = GITHUB_ISSUER
    jwks_url: Optional[str] = GITHUB_JWKS_URL
    jwks_json: Optional[str] = None  # inline key set; wins over jwks_url
    id_token_request_url: Optional[str] = None
    id_token_request_token: Optional[str] = None

    # --- Chain linking ----------------------------------------------------
    caller_token: Optional[str] = None
    artifact_script: Optional[str] = None
    artifact_dir: Optional[str] = None

    # --- Verification expectations ---------------------------------------
    expected_workflow_ref: Optional[str] = None
    expected_repository: Optional[str] = None

    # --- Runtime ----------------------------------------------------------
    http_timeout_s: float = Field(default=30.0, gt=0)
    max_content_bytes: int = Field(default=16 * 1024 * 1024, gt=0)
    log_level: str = "INFO"
    metrics_textfile: Optional[str] = None

    def config_hash(self) -> str:
        """
        Stable hash of the non-secret settings, for logs. Two processes with
        the same effective configuration report the same value.
        """
        payload = self.model_dump(mode="json", exclude=set(_SECRET_FIELDS))
        return sha256_hex(canonical_json_bytes(payload))

    def redacted(self) -> Dict[str, Any]:
        out = self.model_dump(mode="json")
        for k in _SECRET_FIELDS:
            if out.get(k):
                out[k] = "***"
        return out


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------

# CI-provided variables that are read verbatim (no URL_ORACLE_ prefix).
_CI_ENV_FIELDS = {
    "ACTIONS_ID_TOKEN_REQUEST_URL": "id_token_request_url",
    "ACTIONS_ID_TOKEN_REQUEST_TOKEN": "id_token_request_token",
    "CALLER_TOKEN": "caller_token",
}


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority (later wins):
      1. Settings defaults (in-code).
      2. YAML file at `path`, or the one named by URL_ORACLE_CONFIG.
      3. CI variables (ACTIONS_ID_TOKEN_REQUEST_*, CALLER_TOKEN).
      4. URL_ORACLE_<FIELD> variables.

    `env` defaults to os.environ; tests pass a plain dict.
    """
    env = os.environ if env is None else env
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = path or _env_str(env, CONFIG_PATH_ENV, "")
    if path and not os.path.exists(path):
        raise ConfigError(f"config file {path} does not exist")
    yaml_doc = _load_yaml_mapping(yaml_path or "")
    if yaml_doc:
        merged.update(yaml_doc)
        origin = "yaml"

    # 2) CI-provided variables
    for name, key in _CI_ENV_FIELDS.items():
        merged[key] = _env_str(env, name, merged.get(key))

    # 3) URL_ORACLE_* overrides
    for key, value in list(merged.items()):
        name = ENV_PREFIX + key.upper()
        if isinstance(value, bool):
            continue
        # Non-positive env numbers are ignored; YAML values are left to the model.
        if key == "http_timeout_s":
            t = _env_float(env, name, None)
            if t is not None and t > 0:
                merged[key] = t
        elif key == "max_content_bytes":
            n = _env_int(env, name, None)
            if n is not None and n > 0:
                merged[key] = n
        else:
            merged[key] = _env_str(env, name, value)

    try:
        settings = Settings(**merged)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e

    _log.debug(
        "settings loaded",
        extra={"origin": origin, "config_hash": settings.config_hash()},
    )
    return settings


__all__ = ["Settings", "load_settings", "CONFIG_PATH_ENV"]
