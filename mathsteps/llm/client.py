"""Model gateway used by the recognition and explanation stages."""

from __future__ import annotations

import enum
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_nvidia_ai_endpoints import ChatNVIDIA
from langchain_openai import ChatOpenAI

from mathsteps.tools.images import ImagePayload
from mathsteps.utils.config_loader import ModelEndpointConfig
from mathsteps.utils.deadline import Deadline, RequestAbortedError
from mathsteps.utils.logger import get_logger

logger = get_logger("mathsteps.llm.client")

SUPPORTED_PROVIDERS = frozenset({"openai", "nvidia"})


class ProviderMode(enum.Enum):
    """Strategy selected once per stage from its configuration."""

    NOT_CONFIGURED = "not_configured"
    STUB = "stub"
    GATEWAY = "gateway"


def resolve_provider_mode(config: ModelEndpointConfig, require_supported: bool = False) -> ProviderMode:
    """Chooses how a stage should serve requests.

    Args:
        config: Stage endpoint configuration.
        require_supported: When true, providers outside `SUPPORTED_PROVIDERS`
            fall back to the stub instead of the gateway.

    Returns:
        `NOT_CONFIGURED` when provider or model is missing, `STUB` for
        unsupported providers (if requested), `GATEWAY` otherwise.
    """
    if not config.is_configured:
        return ProviderMode.NOT_CONFIGURED
    if require_supported and config.provider.strip().lower() not in SUPPORTED_PROVIDERS:
        return ProviderMode.STUB
    return ProviderMode.GATEWAY


class ModelGatewayError(RuntimeError):
    """Base error for failed model invocations."""


class MissingAPIKeyError(ModelGatewayError):
    """Raised when neither `api_key` nor `api_key_env` yields a key."""


class ModelInvocationError(ModelGatewayError):
    """Wraps provider/transport failures; the message keeps the provider's text."""


@dataclass
class ModelRequest:
    """One chat request.

    Attributes:
        messages: Role-tagged LangChain messages, optionally with image parts.
        deadline: Time budget and cancellation for the call.
        max_tokens: Maximum number of output tokens.
        temperature: Sampling temperature; None keeps the provider default.
    """

    messages: List[BaseMessage]
    deadline: Deadline
    max_tokens: int
    temperature: Optional[float] = None


class ModelGateway(Protocol):
    def generate(self, request: ModelRequest) -> List[str]:
        """Returns the text of every choice; an empty list means no choices."""


class LangChainModelGateway:
    """Runs chat requests through LangChain chat models.

    `nvidia` uses ChatNVIDIA; every other provider is treated as
    OpenAI-compatible and served by ChatOpenAI with the optional `api_base`.
    Calls run on a bounded worker pool so the caller's deadline can be
    enforced regardless of client-side timeouts.

    ChatNVIDIA takes no request timeout, so a hung call can outlive its
    deadline. When a call is abandoned while still running, the pool is
    swapped for a fresh one; the stray thread finishes on the retired pool
    and new requests never queue behind it.
    """

    def __init__(self, config: ModelEndpointConfig, max_workers: int = 8) -> None:
        self.config = config
        self._max_workers = max(1, int(max_workers))
        self._pool_lock = threading.Lock()
        self._executor = self._new_executor()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="model-{}".format(self.config.provider or "gateway"),
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "provider": self.config.provider,
            "model": self.config.model,
            "api_base": self.config.api_base,
            "api_key_env": self.config.api_key_env,
            "api_key_present": bool(self.config.resolve_api_key()),
        }

    def close(self) -> None:
        with self._pool_lock:
            executor = self._executor
        executor.shutdown(wait=False, cancel_futures=True)

    def generate(self, request: ModelRequest) -> List[str]:
        request.deadline.check()
        _load_environment_variables()
        api_key = self.config.resolve_api_key()
        if not api_key:
            raise MissingAPIKeyError(
                "api_key or api_key_env not set for provider '{}'".format(self.config.provider)
            )

        chat_model = self._build_chat_model(api_key, request)
        with self._pool_lock:
            executor = self._executor
            future = executor.submit(chat_model.generate, [request.messages])
        try:
            result = request.deadline.wait_future(future)
        except RequestAbortedError:
            if not future.cancel() and not future.done():
                self._retire_executor(executor)
            raise
        except Exception as exc:
            raise ModelInvocationError(str(exc) or type(exc).__name__) from exc

        generations = result.generations[0] if result.generations else []
        return [str(generation.text or "") for generation in generations]

    def _retire_executor(self, executor: ThreadPoolExecutor) -> None:
        with self._pool_lock:
            if self._executor is not executor:
                return
            self._executor = self._new_executor()
        logger.warning("gateway_pool_replaced provider=%s reason=abandoned_call", self.config.provider)
        executor.shutdown(wait=False)

    def _build_chat_model(self, api_key: str, request: ModelRequest) -> Any:
        provider = self.config.provider.strip().lower()
        timeout = max(1.0, request.deadline.remaining())
        kwargs: Dict[str, Any] = {"model": self.config.model, "api_key": api_key}
        if self.config.api_base:
            kwargs["base_url"] = self.config.api_base.rstrip("/")
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature

        if provider == "nvidia":
            kwargs["max_completion_tokens"] = request.max_tokens
            return ChatNVIDIA(**kwargs)

        kwargs["max_tokens"] = request.max_tokens
        kwargs["timeout"] = timeout
        kwargs["max_retries"] = 0
        return ChatOpenAI(**kwargs)


def build_messages(
    user_prompt: str,
    system_prompt: Optional[str] = None,
    image: Optional[ImagePayload] = None,
    image_detail: str = "low",
) -> List[BaseMessage]:
    """Builds a chat message list with an optional inline image.

    Args:
        user_prompt: Human message text.
        system_prompt: Optional system instruction.
        image: Optional encoded image appended after the text part.
        image_detail: Vision detail hint for OpenAI-compatible providers.

    Returns:
        LangChain messages ready for a chat model.
    """
    messages: List[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=_build_human_content(user_prompt, image, image_detail)))
    return messages


def _build_human_content(user_prompt: str, image: Optional[ImagePayload], image_detail: str) -> Any:
    if image is None:
        return user_prompt
    return [
        {"type": "text", "text": user_prompt},
        {"type": "image_url", "image_url": {"url": image.data_url, "detail": image_detail}},
    ]


def _env_candidates() -> Iterable[Path]:
    return (
        Path.cwd() / ".env",
        Path(__file__).resolve().parents[2] / ".env",
    )


def _load_environment_variables() -> None:
    """Loads candidate `.env` files without overriding the process environment."""
    for env_path in _env_candidates():
        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=False)
