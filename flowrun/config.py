import os
from typing import Optional


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


# Database
ENV: str = os.getenv("FLOWRUN_ENV", "dev")
DATABASE_URL: str = os.getenv(
    "FLOWRUN_DATABASE_URL",
    "sqlite+aiosqlite:///:memory:" if ENV == "test" else "sqlite+aiosqlite:///flowrun.db",
)

# Lost run detection
RUN_TIMEOUT_SECONDS: int = int(os.getenv("RUN_TIMEOUT_SECONDS", "300"))
LOST_RUN_GRACE_PERIOD_SECONDS: int = int(os.getenv("LOST_RUN_GRACE_PERIOD_SECONDS", "60"))
LOST_SWEEP_INTERVAL: float = float(os.getenv("LOST_SWEEP_INTERVAL", "10.0"))

# Dataclip retention
RETENTION_SWEEP_INTERVAL: float = float(os.getenv("RETENTION_SWEEP_INTERVAL", "3600.0"))

# Admission / claiming
PER_WORKFLOW_CLAIM_LIMIT: int = int(os.getenv("PER_WORKFLOW_CLAIM_LIMIT", "50"))
DEFAULT_PROJECT_CONCURRENCY: Optional[int] = _optional_int("DEFAULT_PROJECT_CONCURRENCY")

# Background sweepers started by the app lifespan
ENABLE_SWEEPERS: bool = os.getenv("ENABLE_SWEEPERS", "true").lower() == "true"

# Feature toggles
ENABLE_PROMETHEUS: bool = os.getenv("ENABLE_PROMETHEUS", "true").lower() == "true"
ENABLE_OTEL: bool = os.getenv("ENABLE_OTEL", "false").lower() == "true"

# OpenTelemetry exporter endpoint
OTEL_EXPORTER_ENDPOINT: str = os.getenv(
    "OTEL_EXPORTER_OTLP_ENDPOINT",
    "http://localhost:4318/v1/traces",
)
# "otlp" ships spans to OTEL_EXPORTER_ENDPOINT, "console" prints them
OTEL_EXPORTER: str = os.getenv("FLOWRUN_OTEL_EXPORTER", "otlp")
