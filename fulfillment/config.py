import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")

    # API
    API_TOKEN: str = os.getenv("API_TOKEN", "")
    SERVICE_URL: str = os.getenv("SERVICE_URL", "http://localhost:8000")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Services (empty ledger/delivery/notification URLs mean the in-process implementations)
    CATALOG_BASE_URL: str = os.getenv("CATALOG_BASE_URL", "http://localhost:8001")
    LEDGER_BASE_URL: str = os.getenv("LEDGER_BASE_URL", "")
    DELIVERY_BASE_URL: str = os.getenv("DELIVERY_BASE_URL", "")
    NOTIFICATIONS_BASE_URL: str = os.getenv("NOTIFICATIONS_BASE_URL", "")
    STORE_ACCOUNT: str = os.getenv("STORE_ACCOUNT", "STORE_ACCOUNT_001")

    # Queues
    QUEUE_BACKEND: str = os.getenv("QUEUE_BACKEND", "database")
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    KAFKA_TOPIC_PREFIX: str = os.getenv("KAFKA_TOPIC_PREFIX", "fulfillment")
    QUEUE_VISIBILITY_TIMEOUT: float = float(os.getenv("QUEUE_VISIBILITY_TIMEOUT", "60"))

    # Outbox relay
    OUTBOX_POLL_INTERVAL: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "5"))
    OUTBOX_MAX_RETRIES: int = int(os.getenv("OUTBOX_MAX_RETRIES", "3"))
    OUTBOX_BATCH_SIZE: int = int(os.getenv("OUTBOX_BATCH_SIZE", "20"))
    DELIVERY_FAILED_GRACE: float = float(os.getenv("DELIVERY_FAILED_GRACE", "30"))

    # Reaper
    PAYMENT_TIMEOUT_MINUTES: int = int(os.getenv("PAYMENT_TIMEOUT_MINUTES", "15"))
    REAPER_INTERVAL: float = float(os.getenv("REAPER_INTERVAL", "60"))

    # Warehouse / ledger
    STOCK_HOLD_ATTEMPTS: int = int(os.getenv("STOCK_HOLD_ATTEMPTS", "3"))
    STOCK_RETRY_DELAY: float = float(os.getenv("STOCK_RETRY_DELAY", "0.1"))
    LEDGER_MAX_ATTEMPTS: int = int(os.getenv("LEDGER_MAX_ATTEMPTS", "3"))
    LEDGER_RETRY_DELAY: float = float(os.getenv("LEDGER_RETRY_DELAY", "1.0"))

    # Delivery / notifications
    DELIVERY_TRANSIT_DELAY: float = float(os.getenv("DELIVERY_TRANSIT_DELAY", "10"))
    DELIVERY_LOSS_RATE: float = float(os.getenv("DELIVERY_LOSS_RATE", "0.05"))
    DELIVERY_MAX_RETRIES: int = int(os.getenv("DELIVERY_MAX_RETRIES", "5"))
    DELIVERY_WORKER_CONCURRENCY: int = int(os.getenv("DELIVERY_WORKER_CONCURRENCY", "10"))
    NOTIFICATION_MAX_RETRIES: int = int(os.getenv("NOTIFICATION_MAX_RETRIES", "5"))
    WEBHOOK_TIMEOUT: float = float(os.getenv("WEBHOOK_TIMEOUT", "5"))
    WAREHOUSE_ADDRESS: str = os.getenv("WAREHOUSE_ADDRESS", "Warehouse-1, 456 Storage Rd")

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for the application"""
        if not self.POSTGRES_CONNECTION_STRING:
            return "sqlite+aiosqlite:///./fulfillment.db"
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Sync URL for Alembic"""
        if not self.POSTGRES_CONNECTION_STRING:
            return "sqlite:///./fulfillment.db"
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://")

    @property
    def WEBHOOK_URL(self) -> str:
        return f"{self.SERVICE_URL}/api/delivery-webhook"


settings = Settings()
