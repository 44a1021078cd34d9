"""
Shared utilities for the metered usage gateway.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics recorder
- errors: Canonical error types and responses
- retry: Retry decorators for outbound calls
- base_service: FastAPI application scaffold

Do not import from service_* packages into shared/.
"""
