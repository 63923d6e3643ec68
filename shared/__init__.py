"""
Shared utilities for the External Metrics Service.

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus instrumentation for the service itself
- errors: Canonical error types and responses
- base_service: FastAPI service shell (health, /metrics, lifespan)

Do not import from service packages into shared/.
"""
