"""
MCP Instances — project-scoped orchestration of stdio tool servers.

Architecture:
    ┌──────────────┐   get_tool_provider   ┌──────────────────┐
    │  Agent loop  │ ────────────────────▶ │ InstanceService  │
    └──────────────┘                       └────────┬─────────┘
                                                    │ enabled instances
                                           ┌────────▼─────────┐
                                           │    Aggregator    │
                                           └────────┬─────────┘
                                  one Connector per instance, concurrently
                              ┌─────────────────────┼─────────────────────┐
                       ┌──────▼──────┐       ┌──────▼──────┐       ┌──────▼──────┐
                       │ Tool Server │       │ Tool Server │       │ Tool Server │
                       │ (subprocess)│       │ (subprocess)│       │ (subprocess)│
                       └─────────────┘       └─────────────┘       └─────────────┘
                              JSON-RPC over stdin/stdout pipes (MCP)

A ServerDefinition says how to launch a kind of server (templated
command line, env and parameters). An Instance fills those parameters
in for one project. The Connector resolves the templates and starts a
StdioTransport; the aggregator merges every transport's tools into one
CompositeToolProvider, skipping instances that fail to start.
"""

from mcp_instances.config import Settings, configure_logging, load_settings
from mcp_instances.connector import Connector, ConnectorState
from mcp_instances.definitions import (
    Parameter,
    ParameterLocation,
    ParameterType,
    ServerDefinition,
    ServerDefinitionRegistry,
    StdioConfig,
    load_registry,
    validate_definition,
)
from mcp_instances.instances import (
    InMemoryInstanceStore,
    Instance,
    InstanceStore,
    InstanceStoreError,
    YamlInstanceStore,
)
from mcp_instances.provider import CompositeToolProvider, ToolProviderAggregator
from mcp_instances.result import Err, ErrorKind, Ok, Result
from mcp_instances.runtime import RuntimeCheckResult, RuntimeIssue, Severity, check_runtime
from mcp_instances.service import InstanceService, ToolProviderStats
from mcp_instances.templates import TemplateResolver, ValidationResult
from mcp_instances.tool_config import (
    InMemoryToolConfigStore,
    ToolCategory,
    ToolConfig,
    ToolConfigStats,
    ToolConfigStore,
    ToolConfigStoreError,
    ToolStrategy,
    YamlToolConfigStore,
    infer_tool_category,
    infer_tool_strategy,
)
from mcp_instances.transport import (
    StdioTransport,
    TransportClosedError,
    TransportCreationError,
    TransportErrorKind,
)


# Bridge requires langchain — lazy import to keep the core importable without it
def to_langchain_tools(*args, **kwargs):
    from mcp_instances.bridge import to_langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "CompositeToolProvider",
    "Connector",
    "ConnectorState",
    "Err",
    "ErrorKind",
    "InMemoryInstanceStore",
    "InMemoryToolConfigStore",
    "Instance",
    "InstanceService",
    "InstanceStore",
    "InstanceStoreError",
    "Ok",
    "Parameter",
    "ParameterLocation",
    "ParameterType",
    "Result",
    "RuntimeCheckResult",
    "RuntimeIssue",
    "ServerDefinition",
    "ServerDefinitionRegistry",
    "Settings",
    "Severity",
    "StdioConfig",
    "StdioTransport",
    "TemplateResolver",
    "ToolCategory",
    "ToolConfig",
    "ToolConfigStats",
    "ToolConfigStore",
    "ToolConfigStoreError",
    "ToolProviderAggregator",
    "ToolProviderStats",
    "ToolStrategy",
    "TransportClosedError",
    "TransportCreationError",
    "TransportErrorKind",
    "ValidationResult",
    "YamlInstanceStore",
    "YamlToolConfigStore",
    "check_runtime",
    "configure_logging",
    "infer_tool_category",
    "infer_tool_strategy",
    "load_registry",
    "load_settings",
    "to_langchain_tools",
    "validate_definition",
]
