import os
from functools import lru_cache


class Settings:
    # Scheduler defaults
    DEFAULT_RETRY_COUNT: int = int(os.getenv("TASK_ENGINE_DEFAULT_RETRY_COUNT", "3"))
    RETRY_DELAY_MS: int = int(os.getenv("TASK_ENGINE_RETRY_DELAY_MS", "5000"))
    MAX_RETRY_DELAY_MS: int = int(os.getenv("TASK_ENGINE_MAX_RETRY_DELAY_MS", "60000"))
    MAX_QUEUE_SIZE: int = int(os.getenv("TASK_ENGINE_MAX_QUEUE_SIZE", "100"))
    SHUTDOWN_GRACE_SECONDS: float = float(os.getenv("TASK_ENGINE_SHUTDOWN_GRACE_SECONDS", "10"))
    # Executor: 0 disables the per-step timeout
    STEP_TIMEOUT_SECONDS: float = float(os.getenv("TASK_ENGINE_STEP_TIMEOUT_SECONDS", "0"))
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("TASK_ENGINE_HTTP_TIMEOUT_SECONDS", "30"))
    # Filesystem capability
    FS_ROOT: str = os.getenv("TASK_ENGINE_FS_ROOT", "")
    FS_MAX_FILE_SIZE: int = int(os.getenv("TASK_ENGINE_FS_MAX_FILE_SIZE", str(10 * 1024 * 1024)))
    # Error recovery
    MAX_ERROR_LOG: int = int(os.getenv("TASK_ENGINE_MAX_ERROR_LOG", "50"))
    # Observability
    LOG_LEVEL: str = os.getenv("TASK_ENGINE_LOG_LEVEL", "INFO")
    LOG_DIR: str = os.getenv("TASK_ENGINE_LOG_DIR", "")
    METRICS_PORT: int = int(os.getenv("TASK_ENGINE_METRICS_PORT", "0"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
