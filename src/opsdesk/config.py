# config.py
# Runtime configuration. Values come from the environment (optionally a .env
# file); nothing else in the package reads os.environ directly.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "google/gemini-2.0-flash-001"
DEFAULT_DATABASE_URL = "sqlite:///opsdesk.db"


class AgentConfig(BaseModel):
    """All tunables for one agent deployment."""

    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    temperature: float = 0.7
    max_tokens: int = 2048
    model_timeout: float = Field(default=60.0, gt=0)

    max_rounds: int = Field(default=5, ge=1)
    history_limit: int = Field(default=2, ge=1)
    printable_ratio: float = Field(default=0.6, ge=0, le=1)
    operation_timeout: float = Field(default=30.0, gt=0)

    database_url: str = DEFAULT_DATABASE_URL

    invoice_prefix: str = "INV"
    quotation_prefix: str = "QUO"
    order_prefix: str = "ORD"
    project_prefix: str = "PRJ"
    reference_width: int = Field(default=5, ge=1)
    reference_attempts: int = Field(default=25, ge=1)
    reference_suffix_after: int = Field(default=10, ge=0)

    email_webhook_url: str | None = None
    notify_webhook_url: str | None = None

    trace: bool = False

    @classmethod
    def from_env(cls) -> "AgentConfig":
        env = {
            "api_key": os.getenv("OPENROUTER_API_KEY"),
            "base_url": os.getenv("OPSDESK_BASE_URL"),
            "model": os.getenv("OPSDESK_MODEL"),
            "temperature": os.getenv("OPSDESK_TEMPERATURE"),
            "max_tokens": os.getenv("OPSDESK_MAX_TOKENS"),
            "model_timeout": os.getenv("OPSDESK_MODEL_TIMEOUT"),
            "max_rounds": os.getenv("OPSDESK_MAX_ROUNDS"),
            "history_limit": os.getenv("OPSDESK_HISTORY_LIMIT"),
            "operation_timeout": os.getenv("OPSDESK_OPERATION_TIMEOUT"),
            "database_url": os.getenv("DATABASE_URL"),
            "invoice_prefix": os.getenv("OPSDESK_INVOICE_PREFIX"),
            "quotation_prefix": os.getenv("OPSDESK_QUOTATION_PREFIX"),
            "order_prefix": os.getenv("OPSDESK_ORDER_PREFIX"),
            "project_prefix": os.getenv("OPSDESK_PROJECT_PREFIX"),
            "email_webhook_url": os.getenv("OPSDESK_EMAIL_WEBHOOK_URL"),
            "notify_webhook_url": os.getenv("OPSDESK_NOTIFY_WEBHOOK_URL"),
            "trace": os.getenv("OPSDESK_TRACE"),
        }
        # Unset variables fall back to the field defaults.
        return cls.model_validate({k: v for k, v in env.items() if v not in (None, "")})
