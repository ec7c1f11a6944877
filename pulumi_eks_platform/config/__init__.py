from .loader import ConfigLoader
from .models import (
    ApiConfig,
    BasicAuthConfig,
    CiSupportConfig,
    InfraAwsConfig,
    InfraGcpConfig,
    InfraKubeConfig,
    MonLogConfig,
    OAuthConfig,
    SqlConfig,
    StackConfig,
    TlsConfig,
)
from .node_pools import NodePoolConfig, TaintConfig

__all__ = [
    "ApiConfig",
    "BasicAuthConfig",
    "CiSupportConfig",
    "ConfigLoader",
    "InfraAwsConfig",
    "InfraGcpConfig",
    "InfraKubeConfig",
    "MonLogConfig",
    "NodePoolConfig",
    "OAuthConfig",
    "SqlConfig",
    "StackConfig",
    "TaintConfig",
    "TlsConfig",
]
