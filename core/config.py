"""
Конфигурация приложения через Pydantic.
Все переменные берутся из .env файла.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Настройки приложения"""

    # ========== BOT ==========
    BOT_TOKEN: str  # Telegram bot token (обязательно)
    ADMIN_IDS: List[int] = []  # List of admin user IDs

    # ========== DATABASE ==========
    DATABASE_HOST: str = "localhost"
    DATABASE_PORT: int = 5432
    DATABASE_USER: str = "postgres"
    DATABASE_PASSWORD: str  # Обязательно из .env
    DATABASE_NAME: str = "group_missions"
    DATABASE_DSN: Optional[str] = None  # Полный DSN, перекрывает DATABASE_* поля
    DATABASE_POOL_SIZE: int = 20  # Бот и планировщик делят один пул
    DATABASE_MAX_OVERFLOW: int = 0

    @property
    def DATABASE_URL(self) -> str:
        """Construct async PostgreSQL connection string"""
        if self.DATABASE_DSN:
            return self.DATABASE_DSN
        return (
            f"postgresql+asyncpg://"
            f"{self.DATABASE_USER}:{self.DATABASE_PASSWORD}@"
            f"{self.DATABASE_HOST}:{self.DATABASE_PORT}/"
            f"{self.DATABASE_NAME}"
        )

    # ========== REDIS ==========
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    @property
    def REDIS_URL(self) -> str:
        """Construct Redis connection string"""
        if self.REDIS_PASSWORD:
            return (
                f"redis://:{self.REDIS_PASSWORD}@"
                f"{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
            )
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ========== GROUP MISSION ENGINE ==========
    REQUIREMENT_CHECK_TIMEOUT_SECONDS: float = 5.0  # Таймаут внешней проверки NFT/токенов
    CONFLICT_RETRY_ATTEMPTS: int = 1  # Повторы при конфликте версий группы
    DEFAULT_FORMATION_LEAD_HOURS: int = 24  # Дедлайн формирования = старт - N часов

    # ========== SCHEDULER ==========
    BATCH_MATCHING_INTERVAL_SECONDS: int = 300
    REWARD_DISPATCH_INTERVAL_SECONDS: int = 30
    REWARD_DISPATCH_BATCH_SIZE: int = 100
    DEADLINE_CHECK_INTERVAL_SECONDS: int = 600

    # ========== LOGGING ==========
    LOG_LEVEL: str = "INFO"

    # ========== ENVIRONMENT ==========
    ENVIRONMENT: str = "development"  # development | production
    DEBUG: bool = False

    class Config:
        """Pydantic configuration"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

        # Для документации
        json_schema_extra = {
            "example": {
                "BOT_TOKEN": "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11",
                "DATABASE_PASSWORD": "secure_password_here",
                "ADMIN_IDS": [123456789, 987654321],
            }
        }


# ✅ Глобальный экземпляр конфигурации
settings = Settings()
