"""
API Gateway Service package for the metered usage marketplace.

The gateway fronts client requests, enforcing:
- Authentication: usage credentials or proof-of-possession headers
- Replay prevention: single-use proof nonces in a shared cache
- Receipt ingestion: durable enqueue with a background drain

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.auth: Credential codec, proof verifier, replay cache and auth gate.
- app.receipts: Durable queue, drainer and settlement sinks.
- app.domain: API models and quote arithmetic.
"""
