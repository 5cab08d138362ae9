"""Core module for QueueSync jobs."""

from .config import Settings, get_settings
from .logger import LOGGER_NAME, setup_logging, get_job_logger
from .models import (
    QueueType,
    ConversionType,
    ProcessingStrategy,
    UserCallScore,
    Conversion,
    CallSession,
    SourceUser,
    PendingRequirement,
    UserRequirementStatus,
    JobOptions,
    JobResult,
)
from .db import LocalStoreRepository, create_repository
from .replica import ReplicaError, ReplicaRepository, create_replica_repository
from .circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    get_circuit,
    get_all_circuit_stats,
    get_database_circuits,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Logging
    "LOGGER_NAME",
    "setup_logging",
    "get_job_logger",
    # Models
    "QueueType",
    "ConversionType",
    "ProcessingStrategy",
    "UserCallScore",
    "Conversion",
    "CallSession",
    "SourceUser",
    "PendingRequirement",
    "UserRequirementStatus",
    "JobOptions",
    "JobResult",
    # Database
    "LocalStoreRepository",
    "create_repository",
    "ReplicaError",
    "ReplicaRepository",
    "create_replica_repository",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "get_circuit",
    "get_all_circuit_stats",
    "get_database_circuits",
]
