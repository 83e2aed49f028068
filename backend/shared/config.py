"""Environment-driven settings and the fraud scoring configuration."""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from shared.file_store import FileStore

logger = logging.getLogger("disputerail.config")

DATA_DIR = os.environ.get("DATA_DIR", "/app/data")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "whsec_disputerail_demo_secret_key_2026")
NETWORK_API_URL = os.environ.get("NETWORK_API_URL", "http://network-sim:8030")
NOTIFY_CALLBACK_URL = os.environ.get("NOTIFY_CALLBACK_URL", "http://notifier:8031/notifications")
MERCHANT_RESPONSE_WINDOW_HOURS = int(os.environ.get("MERCHANT_RESPONSE_WINDOW_HOURS", 48))
FRAUD_CONFIG_PATH = os.environ.get("FRAUD_CONFIG_PATH", "")

DATA_SUBDIRS = [
    "disputes",
    "timeline",
    "indexes",
    "locks",
    "reconciliation",
    "idempotency",
    "outbox",
    "network",
    "metrics",
]


class FraudConfig(BaseModel):
    """Weights and thresholds for the fraud risk aggregator.

    ``weights`` maps factor names to non-negative weights; factors not listed
    use ``default_weight``. Scores below ``approve_below`` recommend APPROVE,
    above ``reject_above`` recommend REJECT. A lone factor weighing at least
    ``high_weight`` that sits on the other side of ``lean_split`` from every
    other factor recommends COMPROMISE.
    """

    weights: dict[str, float] = Field(default_factory=lambda: {
        "qr_payload_verified": 2.0,
        "customer_history": 1.5,
        "merchant_response": 1.5,
        "evidence_volume": 1.0,
    })
    default_weight: float = Field(default=1.0, ge=0.0)
    approve_below: float = Field(default=0.3, ge=0.0, le=1.0)
    reject_above: float = Field(default=0.7, ge=0.0, le=1.0)
    neutral_score: float = Field(default=0.5, ge=0.0, le=1.0)
    lean_split: float = Field(default=0.5, ge=0.0, le=1.0)
    high_weight: float = Field(default=2.0, ge=0.0)
    min_factors_for_compromise: int = Field(default=3, ge=2)

    @model_validator(mode="after")
    def check_thresholds(self) -> "FraudConfig":
        if self.approve_below > self.reject_above:
            raise ValueError("approve_below must not exceed reject_above")
        for name, weight in self.weights.items():
            if weight < 0:
                raise ValueError(f"weight for {name} must be non-negative")
        return self

    def weight_for(self, factor: str) -> float:
        return self.weights.get(factor, self.default_weight)


def load_fraud_config(path: Optional[str] = None) -> FraudConfig:
    path = path if path is not None else FRAUD_CONFIG_PATH
    if not path:
        return FraudConfig()
    data = FileStore.read_json(path, default={})
    logger.info(f"Loaded fraud config from {path}")
    return FraudConfig.model_validate(data)


def init_data_dirs(data_dir: Optional[str] = None) -> str:
    data_dir = data_dir or DATA_DIR
    for d in DATA_SUBDIRS:
        os.makedirs(os.path.join(data_dir, d), exist_ok=True)
    return data_dir
