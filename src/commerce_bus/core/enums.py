"""Enumerations used across the event bus."""

from enum import Enum


class TransportKind(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class IdempotencyBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
    SQL = "sql"


class DeadLetterReason(str, Enum):
    DECODE_ERROR = "decode_error"
    MAX_ATTEMPTS = "max_attempts_exceeded"
