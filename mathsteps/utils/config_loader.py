"""Configuration loader for the YAML model/runtime settings file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = "configs/models.yml"
CONFIG_PATH_ENV = "MATHSTEPS_MODELS_CONFIG"
UPLOAD_DIR_ENV = "MATHSTEPS_UPLOAD_DIR"

DEFAULT_OCR_TIMEOUT_SECONDS = 30
DEFAULT_EXPLANATION_TIMEOUT_SECONDS = 180
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 4096


class ConfigError(RuntimeError):
    """Raised when configuration files cannot be loaded or validated."""


@dataclass
class ModelEndpointConfig:
    """Connection settings shared by every model-backed stage.

    Attributes:
        provider: Provider name (`openai`, `nvidia`, ...). Empty means not configured.
        model: Provider model identifier. Empty means not configured.
        api_base: Optional OpenAI-compatible base URL.
        api_key: Inline API key; takes precedence over `api_key_env`.
        api_key_env: Environment variable read when `api_key` is empty.
        timeout_sec: Per-call time budget; non-positive selects the stage default.
    """

    provider: str = ""
    model: str = ""
    api_base: str = ""
    api_key: str = ""
    api_key_env: str = ""
    timeout_sec: int = 0

    @property
    def is_configured(self) -> bool:
        return bool(self.provider.strip() and self.model.strip())

    def resolve_api_key(self) -> str:
        if self.api_key.strip():
            return self.api_key.strip()
        if self.api_key_env.strip():
            return (os.getenv(self.api_key_env.strip()) or "").strip()
        return ""

    def default_timeout_seconds(self) -> int:
        return DEFAULT_OCR_TIMEOUT_SECONDS

    def timeout_seconds(self) -> int:
        if self.timeout_sec <= 0:
            return self.default_timeout_seconds()
        return int(self.timeout_sec)


@dataclass
class OCRConfig(ModelEndpointConfig):
    """Recognition settings: image -> problem text."""

    max_retries: int = 1

    def effective_max_retries(self) -> int:
        return self.max_retries if self.max_retries > 0 else 1


@dataclass
class ExplanationConfig(ModelEndpointConfig):
    """Explanation settings: problem text or image -> ordered steps."""

    temperature: float = 0.0
    max_tokens: int = 0
    system_prompt_file: str = ""

    def default_timeout_seconds(self) -> int:
        return DEFAULT_EXPLANATION_TIMEOUT_SECONDS

    def effective_temperature(self) -> float:
        return self.temperature if self.temperature > 0 else DEFAULT_TEMPERATURE

    def effective_max_tokens(self) -> int:
        return self.max_tokens if self.max_tokens > 0 else DEFAULT_MAX_TOKENS


@dataclass
class ServerSettings:
    upload_dir: str = "uploads"
    max_upload_mb: int = 10
    history_file: str = "data/history.json"
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class ModelsConfig:
    ocr: OCRConfig = field(default_factory=OCRConfig)
    explanation: ExplanationConfig = field(default_factory=ExplanationConfig)
    server: ServerSettings = field(default_factory=ServerSettings)

    def describe_status(self) -> str:
        """Summarizes which stages are live, without exposing secrets."""
        parts = []
        if self.ocr.is_configured:
            parts.append("ocr={}/{}".format(self.ocr.provider, self.ocr.model))
        else:
            parts.append("ocr=stub(not configured)")
        if self.explanation.is_configured:
            parts.append("llm={}/{}".format(self.explanation.provider, self.explanation.model))
        else:
            parts.append("llm=stub(not configured)")
        return "config loaded: " + "; ".join(parts)


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError("Configuration file not found: {}".format(path))
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError("Invalid YAML in {}: {}".format(path, exc)) from exc
    if not isinstance(loaded, dict):
        raise ConfigError("Configuration root must be a mapping in {}".format(path))
    return loaded


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError("'{}' must be a mapping".format(key))
    return value


def _endpoint_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "provider": str(data.get("provider") or "").strip(),
        "model": str(data.get("model") or "").strip(),
        "api_base": str(data.get("api_base") or "").strip(),
        "api_key": str(data.get("api_key") or "").strip(),
        "api_key_env": str(data.get("api_key_env") or "").strip(),
        "timeout_sec": int(data.get("timeout_sec") or 0),
    }


def parse_models_config(data: Dict[str, Any]) -> ModelsConfig:
    ocr_data = _section(data, "ocr")
    llm_data = _section(data, "llm")
    explanation_data = _section(llm_data, "explanation")
    server_data = _section(data, "server")

    try:
        ocr = OCRConfig(max_retries=int(ocr_data.get("max_retries") or 1), **_endpoint_kwargs(ocr_data))
        explanation = ExplanationConfig(
            temperature=float(explanation_data.get("temperature") or 0.0),
            max_tokens=int(explanation_data.get("max_tokens") or 0),
            system_prompt_file=str(explanation_data.get("system_prompt_file") or "").strip(),
            **_endpoint_kwargs(explanation_data),
        )
        server = ServerSettings(
            upload_dir=str(server_data.get("upload_dir") or "uploads"),
            max_upload_mb=int(server_data.get("max_upload_mb") or 10),
            history_file=str(server_data.get("history_file", "data/history.json") or ""),
            host=str(server_data.get("host") or "0.0.0.0"),
            port=int(server_data.get("port") or 8080),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError("Invalid configuration value: {}".format(exc)) from exc

    upload_override = (os.getenv(UPLOAD_DIR_ENV) or "").strip()
    if upload_override:
        server.upload_dir = upload_override
    return ModelsConfig(ocr=ocr, explanation=explanation, server=server)


def load_models_config(path: Optional[str] = None) -> ModelsConfig:
    """Loads the models configuration file.

    Args:
        path: Explicit path; falls back to `MATHSTEPS_MODELS_CONFIG`, then
            `configs/models.yml`.

    Returns:
        Parsed configuration.

    Raises:
        ConfigError: If the file is missing, unreadable or malformed.
    """
    resolved = path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    return parse_models_config(_load_yaml(Path(resolved)))
