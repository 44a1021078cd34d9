"""
API Gateway service for the metered usage marketplace.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, Request, Response
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import DEV_PLACEHOLDER_SECRET, GatewayConfig, get_config
from shared.logging import set_job_context
from service_gateway.app.auth import (
    AuthGate,
    CredentialCodec,
    ProofOfPossessionVerifier,
    ReplayCache,
    SecurityPolicy,
    USAGE_AUTH_HEADER,
    create_replay_cache,
)
from service_gateway.app.domain.models import (
    ExecuteRequest,
    ExecuteResponse,
    IngestResponse,
    LockRequest,
    LockResponse,
    QuoteRequest,
    QuoteResponse,
    UsageReport,
)
from service_gateway.app.domain.quote import default_tariff, estimate_credits, plan_entries
from service_gateway.app.receipts import (
    DurableQueue,
    HttpSettlementClient,
    LoggingSettlement,
    QueueDrainer,
    QueueItem,
)
from service_gateway.app.receipts.drainer import SettleFn

# Placeholder until Execute reports metered usage from the downstream call.
FIXED_USAGE = UsageReport(units=11840, credits=474)


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        replay_cache: Optional[ReplayCache] = None,
        queue: Optional[DurableQueue] = None,
        settle: Optional[SettleFn] = None,
    ):
        config = config or get_config()
        if config.is_production and config.usage_auth_secret == DEV_PLACEHOLDER_SECRET:
            raise ValueError("ACCESS_USAGE_AUTH_SECRET must be set in production mode")

        super().__init__("gateway", config)

        self.policy = SecurityPolicy.from_config(self.config)
        self.logger.info(
            "Security policy loaded",
            mode=self.policy.mode,
            allow_unsigned_proofs=self.policy.allow_unsigned_proofs,
            allow_legacy_credentials=self.policy.allow_legacy_credentials,
        )

        self.replay_cache = replay_cache or create_replay_cache(self.config.redis_url)
        self.codec = CredentialCodec(self.config.usage_auth_secret)
        self.verifier = ProofOfPossessionVerifier(self.replay_cache, self.policy, self.metrics)
        self.auth_gate = AuthGate(
            self.codec,
            self.verifier,
            self.policy,
            self.metrics,
            cache_ttl_seconds=self.config.auth_cache_ttl_seconds,
            cache_max_entries=self.config.auth_cache_max_entries,
            credential_ttl_seconds=self.config.credential_ttl_seconds,
        )
        self.tariff = default_tariff()

        self.queue = queue or DurableQueue(self.config.redis_url, self.config.queue_key, self.metrics)
        if settle is not None:
            self.settlement = settle
        elif self.config.settlement_url:
            self.settlement = HttpSettlementClient(self.config.settlement_url)
        else:
            self.settlement = LoggingSettlement()
        self.drainer = QueueDrainer(self.queue, self.settlement, self.metrics)

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    async def _on_startup(self):
        if self.queue.has_backend:
            await self.queue.health_check()
        # Items left from a previous process are drained on boot.
        self.drainer.trigger()

    async def _on_shutdown(self):
        await self.drainer.shutdown(self.config.drain_shutdown_timeout)
        await self.queue.close()
        await self.replay_cache.close()
        close = getattr(self.settlement, "close", None)
        if close is not None:
            await close()

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "gateway",
                "message": "Metered usage gateway",
                "version": "1.0.0",
                "security_mode": self.policy.mode
            }

        @self.app.get("/ready")
        async def readiness():
            """Readiness: degraded queue durability or replay store makes the instance unready."""
            if self.queue.has_backend:
                await self.queue.health_check()
            replay_ok = await self.replay_cache.health_check()
            ready = not self.queue.degraded and replay_ok
            content = {
                "ready": ready,
                "queue": "durable" if self.queue.durable else "best_effort",
                "queue_error": self.queue.last_error,
                "replay_cache": self.replay_cache.backend if replay_ok else "error",
            }
            return JSONResponse(status_code=200 if ready else 503, content=content)

        @self.app.post("/v1/jobs/quote", response_model=QuoteResponse)
        async def quote(body: QuoteRequest):
            """Estimate credits for a job plan."""
            self.metrics.increment_counter("gateway_rps")
            set_job_context(tenant_id=body.tenant_id)

            estimated_credits = estimate_credits(plan_entries(body.plan), self.tariff)
            return QuoteResponse(
                estimated_credits=estimated_credits,
                tariff_hash=self.tariff.hash,
                expires_ms=int(time.time() * 1000) + self.config.quote_ttl_ms,
            )

        @self.app.post("/v1/jobs/lock", response_model=LockResponse)
        async def lock(request: Request, response: Response, body: LockRequest):
            """Lock a budget and mint a usage credential for the job."""
            self.metrics.increment_counter("gateway_rps")
            set_job_context(job_id=body.job_id)

            decision = await self.auth_gate.authenticate(request)
            if not decision.allowed:
                self.logger.info("Lock rejected", auth_method=decision.method)
                return JSONResponse(status_code=401, content={"error": "missing or invalid auth"})

            token, expires_at = self.auth_gate.mint_credential(
                job_id=body.job_id,
                locked_budget=body.budget_apic,
                endpoints=body.endpoints,
                subject=decision.subject,
            )
            response.headers["X-Lock-Handle"] = f"lock-{body.job_id}"
            self.logger.info("Budget locked", auth_method=decision.method, budget=body.budget_apic)

            return LockResponse(
                job_id=body.job_id,
                locked_budget_apic=body.budget_apic,
                usage_auth_token=token,
                expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat(),
            )

        @self.app.post("/v1/execute", response_model=ExecuteResponse)
        async def execute(request: Request, body: Optional[ExecuteRequest] = None):
            """Run a paid action. The locked budget is not checked yet."""
            self.metrics.increment_counter("gateway_rps")

            token = request.headers.get(USAGE_AUTH_HEADER)
            if token:
                decoded = self.codec.decode(token, self.policy.credential_formats)
                if decoded is not None:
                    set_job_context(job_id=decoded.job_id)

            self.logger.info("Execute accepted", endpoint=body.endpoint if body else None)
            return ExecuteResponse(ok=True, usage=FIXED_USAGE)

        @self.app.post("/v1/usage/emit", response_model=IngestResponse)
        async def usage_emit(payload: Dict[str, Any] = Body(...)):
            """Accept a usage record for settlement."""
            return await self._ingest(payload, kind="usage", id_prefix="rx")

        @self.app.post("/v1/oracle/receipt", response_model=IngestResponse)
        async def oracle_receipt(payload: Dict[str, Any] = Body(...)):
            """Accept an oracle receipt for settlement."""
            return await self._ingest(payload, kind="receipt", id_prefix="rc")

    async def _ingest(self, payload: Dict[str, Any], kind: str, id_prefix: str) -> IngestResponse:
        self.metrics.increment_counter("gateway_rps")

        item_id = str(payload.get("id") or f"{id_prefix}-{uuid.uuid4().hex[:12]}")
        result = await self.queue.push(QueueItem(id=item_id, payload=payload, kind=kind))
        self.drainer.trigger()

        if not result.durable:
            self.logger.debug("Item buffered in memory", item_id=item_id, kind=kind)
        return IngestResponse(ok=True, id=item_id, durability=result.durability.value)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check gateway dependencies."""
        dependencies = {}

        if self.queue.has_backend:
            dependencies["queue"] = "ok" if await self.queue.health_check() else "degraded"
        else:
            dependencies["queue"] = "memory"

        replay_ok = await self.replay_cache.health_check()
        dependencies["replay_cache"] = self.replay_cache.backend if replay_ok else "error"
        return dependencies


def create_app(config: Optional[GatewayConfig] = None):
    """Create FastAPI application."""
    service = GatewayService(config)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
