import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models import ConflictStrategy


class Settings(BaseModel):
    transaction_threshold: Decimal = Field(default=Decimal("100"), ge=0)
    min_loan_amount: Decimal = Field(default=Decimal("100"), gt=0)
    max_loan_amount: Decimal = Field(default=Decimal("999999"), gt=0)
    sync_max_retries: int = Field(default=5, ge=1)
    allocation_cas_retries: int = Field(default=3, ge=1)
    ussd_session_ttl_seconds: int = Field(default=180, gt=0)
    queue_default_strategy: ConflictStrategy = ConflictStrategy.LOCAL_WINS
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        values = {
            "transaction_threshold": os.getenv("TRANSACTION_THRESHOLD"),
            "min_loan_amount": os.getenv("MIN_LOAN_AMOUNT"),
            "max_loan_amount": os.getenv("MAX_LOAN_AMOUNT"),
            "sync_max_retries": os.getenv("SYNC_MAX_RETRIES"),
            "allocation_cas_retries": os.getenv("ALLOCATION_CAS_RETRIES"),
            "ussd_session_ttl_seconds": os.getenv("USSD_SESSION_TTL_SECONDS"),
            "queue_default_strategy": os.getenv("SYNC_DEFAULT_STRATEGY"),
            "log_level": os.getenv("LOG_LEVEL"),
            "log_file": os.getenv("LOG_FILE"),
        }
        return cls(**{k: v for k, v in values.items() if v not in (None, "")})


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
