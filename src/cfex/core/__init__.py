"""
cfex.core: shared infrastructure used by every pipeline stage.

Modules:
    bits     - fixed-width integer tables and conversions
    config   - EngineConfiguration and StageConfiguration
    logging  - CfexLogger with MDC support, configure_loggers
    registry - Registrant metaclass and EventEmitter
    stats    - NormalizationStatistics folded from per-method results
"""

# Configuration
from .config import (
    ConfigConstants,
    EngineConfiguration,
    StageConfiguration,
    DEFAULT_USER_DIR,
)

# Logging
from .logging import (
    CfexLogger,
    getLogger,
    configure_loggers,
    LoggerConfigurator,
    LevelFlag,
)

# Registry and events
from .registry import (
    Registrant,
    Registry,
    EventEmitter,
)

# Statistics
from .stats import NormalizationEvent, NormalizationStatistics

__all__ = [
    "ConfigConstants",
    "EngineConfiguration",
    "StageConfiguration",
    "DEFAULT_USER_DIR",
    "CfexLogger",
    "getLogger",
    "configure_loggers",
    "LoggerConfigurator",
    "LevelFlag",
    "Registrant",
    "Registry",
    "EventEmitter",
    "NormalizationEvent",
    "NormalizationStatistics",
]
