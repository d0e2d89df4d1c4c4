
import os

# Feature toggles
ENABLE_PROMETHEUS: bool = os.getenv("ENABLE_PROMETHEUS", "true").lower() == "true"
ENABLE_OTEL: bool = os.getenv("ENABLE_OTEL", "false").lower() == "true"

# OpenTelemetry exporter endpoint
OTEL_EXPORTER_ENDPOINT: str = os.getenv(
    "OTEL_EXPORTER_OTLP_ENDPOINT",
    "http://localhost:4318/v1/traces",
)

# Engine selection: "real" (store-backed) or "mock" (in-memory simulator)
ENGINE_MODE: str = os.getenv("AGENTFLOW_ENGINE_MODE", "real").lower()

# Database
ENV: str = os.getenv("AGENTFLOW_ENV", "dev")
DATABASE_URL: str = os.getenv(
    "AGENTFLOW_DATABASE_URL",
    "sqlite+aiosqlite:///:memory:" if ENV == "test" else "sqlite+aiosqlite:///agentflow.db",
)

# Step execution defaults (milliseconds)
STEP_TIMEOUT_MS: int = int(os.getenv("STEP_TIMEOUT_MS", "30000"))
STEP_RETRY_DELAY_MS: int = int(os.getenv("STEP_RETRY_DELAY_MS", "1000"))

# Monitor ring buffer size
MAX_EVENT_HISTORY: int = int(os.getenv("MAX_EVENT_HISTORY", "10000"))

# Mock engine
MOCK_FAILURE_RATE: float = float(os.getenv("MOCK_FAILURE_RATE", "0.1"))
MOCK_DELAY_MIN_MS: int = int(os.getenv("MOCK_DELAY_MIN_MS", "500"))
MOCK_DELAY_MAX_MS: int = int(os.getenv("MOCK_DELAY_MAX_MS", "2000"))
MOCK_MAX_CONCURRENT_EXECUTIONS: int = int(os.getenv("MOCK_MAX_CONCURRENT_EXECUTIONS", "10"))
