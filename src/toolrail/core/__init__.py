"""Core types, errors, and shared utilities."""

from toolrail.core.envelope import (
    RESPONSE_SCHEMA_VERSION,
    IntentType,
    ResponseMeta,
    ToolErrorInfo,
    ToolResponse,
    failure,
    rejection,
    success,
    validate_tool_response,
)
from toolrail.core.errors import (
    BuildError,
    ConfigError,
    ErrorKind,
    ErrorLayer,
    HandlerResolutionError,
    MalformedResponseError,
    RegistryError,
    RegistryLockedError,
    ToolError,
    ToolrailError,
)
from toolrail.core.retry import RetryConfig, retry_tool_call, should_retry

__all__ = [
    "RESPONSE_SCHEMA_VERSION",
    "BuildError",
    "ConfigError",
    "ErrorKind",
    "ErrorLayer",
    "HandlerResolutionError",
    "IntentType",
    "MalformedResponseError",
    "RegistryError",
    "RegistryLockedError",
    "ResponseMeta",
    "RetryConfig",
    "ToolError",
    "ToolErrorInfo",
    "ToolResponse",
    "ToolrailError",
    "failure",
    "rejection",
    "retry_tool_call",
    "should_retry",
    "success",
    "validate_tool_response",
]
