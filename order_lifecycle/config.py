import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")

    # API
    API_TOKEN: str = os.getenv("API_TOKEN", "")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Services
    PAYMENT_SERVICE_URL: str = os.getenv("PAYMENT_SERVICE_URL", "http://payments.local")

    # Kafka
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    ORDER_EVENTS_TOPIC: str = os.getenv("ORDER_EVENTS_TOPIC", "order.events")

    # Order lifecycle
    RETURN_WINDOW_DAYS: int = int(os.getenv("RETURN_WINDOW_DAYS", "7"))
    IDENTIFIER_MAX_ATTEMPTS: int = int(os.getenv("IDENTIFIER_MAX_ATTEMPTS", "10"))

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for the application"""
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Sync URL for Alembic"""
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://")


settings = Settings()
