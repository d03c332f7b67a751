"""Model gateway and response parsing."""

from .client import LangChainModelGateway, ModelGateway, ModelRequest, ProviderMode, build_messages
from .parser import (
    EmptyResponseError,
    MalformedStepDataError,
    ResponseParseError,
    parse_steps_response,
    render_steps_response,
)

__all__ = [
    "LangChainModelGateway",
    "ModelGateway",
    "ModelRequest",
    "ProviderMode",
    "build_messages",
    "EmptyResponseError",
    "MalformedStepDataError",
    "ResponseParseError",
    "parse_steps_response",
    "render_steps_response",
]
