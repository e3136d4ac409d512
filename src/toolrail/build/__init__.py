"""Schema compiler: tool directories in, registry artifact out."""

from toolrail.build.adapters import project
from toolrail.build.compiler import build_registry, compile_tools, write_artifact
from toolrail.core.artifact import (
    DEFAULT_PROVIDERS,
    RegistryArtifact,
    ToolDefinition,
    ToolRecord,
)

__all__ = [
    "DEFAULT_PROVIDERS",
    "RegistryArtifact",
    "ToolDefinition",
    "ToolRecord",
    "build_registry",
    "compile_tools",
    "project",
    "write_artifact",
]
