from .config import (
    CacheConfig,
    Config,
    LazyConfig,
    MonitoringConfig,
    OperationLimit,
    PaginationOptions,
    ReliabilityConfig,
    find_config_file,
    settings,
)

__all__ = [
    "CacheConfig",
    "Config",
    "LazyConfig",
    "MonitoringConfig",
    "OperationLimit",
    "PaginationOptions",
    "ReliabilityConfig",
    "find_config_file",
    "settings",
]
