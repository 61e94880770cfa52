""" Configuration settings for the ShardShift orchestrator """
import os
from typing import Optional
from pydantic import BaseModel, HttpUrl


def _optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value else None


class Settings(BaseModel):
    """ Configuration settings for the ShardShift orchestrator """
    VALKEY_HOST: str = os.getenv("VALKEY_HOST", "localhost")
    VALKEY_PORT: int = int(os.getenv("VALKEY_PORT", "6379"))
    VALKEY_DB: int = int(os.getenv("VALKEY_DB", "0"))
    CATALOG_PREFIX: str = os.getenv("SHARDSHIFT_CATALOG_PREFIX", "shardshift:")
    REPLICATION_API_URL: HttpUrl = os.getenv("REPLICATION_API_URL", "http://localhost:8000")
    REPLICATION_API_TOKEN: Optional[str] = os.getenv("REPLICATION_API_TOKEN")
    REPLICATION_API_TIMEOUT: int = 10
    ORIGIN_REGION: str = os.getenv("ORIGIN_REGION", "origin")
    RECOVERY_REGION: str = os.getenv("RECOVERY_REGION", "recovery")
    MAX_CONCURRENT_OPERATIONS: int = int(os.getenv("MAX_CONCURRENT_OPERATIONS", "50"))
    MIN_POLL_INTERVAL: float = 1.0
    MAX_POLL_INTERVAL: float = 10.0
    # Unset keeps a stuck operation in its slot until the operator re-runs
    OPERATION_TIMEOUT: Optional[float] = _optional_float("OPERATION_TIMEOUT")
    RECLASSIFY_INTERVAL: float = 30.0
    MAX_CLASSIFICATION_CYCLES: int = int(os.getenv("MAX_CLASSIFICATION_CYCLES", "5"))
    RUN_LOCK_TTL: int = 6 * 60 * 60
    PROMETHEUS_PORT: int = int(os.getenv("PROMETHEUS_PORT", "8080"))
    LOG_TO_VALKEY: bool = os.getenv("SHARDSHIFT_LOG_TO_VALKEY", "false").lower() == "true"
    VERBOSE: bool = False
