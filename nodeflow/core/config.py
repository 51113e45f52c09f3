"""
Configuration for nodeflow
"""
import os
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


class Config:
    """Configuration class for nodeflow"""

    # Debug mode (set NODEFLOW_DEBUG=true to enable)
    DEBUG: bool = os.getenv("NODEFLOW_DEBUG", "").lower() in ("true", "1", "yes")
    # Explicit log level name (DEBUG, INFO, WARNING...); overrides NODEFLOW_DEBUG
    LOG_LEVEL: str = os.getenv("NODEFLOW_LOG_LEVEL", "")

    # Scheduler defaults (overridable per execution)
    DEFAULT_CONCURRENCY: int = int(os.getenv("NODEFLOW_CONCURRENCY", "8"))
    DEFAULT_DEADLINE_MS: Optional[int] = _optional_int("NODEFLOW_DEADLINE_MS")
    DEFAULT_MAX_ITERATIONS: int = int(os.getenv("NODEFLOW_MAX_ITERATIONS", "100"))
    MAX_LOOP_DEPTH: int = int(os.getenv("NODEFLOW_MAX_LOOP_DEPTH", "16"))

    # How often the scheduler wakes up to observe an external cancellation (seconds)
    CANCEL_POLL_INTERVAL: float = float(os.getenv("NODEFLOW_CANCEL_POLL_INTERVAL", "0.05"))
    # How long cancelled executors get to wind down before being recorded as Cancelled (seconds)
    CANCEL_GRACE_PERIOD: float = float(os.getenv("NODEFLOW_CANCEL_GRACE_PERIOD", "1.0"))

    # Retry policy for external (ai-*, automation-*) nodes
    RETRY_ATTEMPTS: int = int(os.getenv("NODEFLOW_RETRY_ATTEMPTS", "3"))
    RETRY_BASE_MS: float = float(os.getenv("NODEFLOW_RETRY_BASE_MS", "200"))
    RETRY_FACTOR: float = float(os.getenv("NODEFLOW_RETRY_FACTOR", "2"))
    RETRY_JITTER: float = float(os.getenv("NODEFLOW_RETRY_JITTER", "0.2"))

    # Outbound HTTP adapter
    HTTP_TIMEOUT: float = float(os.getenv("NODEFLOW_HTTP_TIMEOUT", "30"))

    # API server configuration
    API_HOST: str = os.getenv("NODEFLOW_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("NODEFLOW_PORT", "7790"))

    @classmethod
    def validate(cls) -> bool:
        """Validate configuration"""
        if cls.DEFAULT_CONCURRENCY < 1:
            print("[CONFIG] Error: NODEFLOW_CONCURRENCY must be at least 1")
            return False
        if cls.DEFAULT_DEADLINE_MS is not None and cls.DEFAULT_DEADLINE_MS <= 0:
            print("[CONFIG] Error: NODEFLOW_DEADLINE_MS must be positive")
            return False
        if cls.RETRY_ATTEMPTS < 1:
            print("[CONFIG] Error: NODEFLOW_RETRY_ATTEMPTS must be at least 1")
            return False
        return True
