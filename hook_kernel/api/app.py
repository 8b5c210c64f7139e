"""
Hook Kernel API: FastAPI endpoints.

Exposes the kernel to operators and the host tool:
- Action intake and pattern feedback
- Rule, execution and pattern inspection
- Parameters and their history
- Optimizations and A/B tests
- Rule chain analysis
- Retention maintenance
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional, Union
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from hook_kernel.analysis.chain import render_text
from hook_kernel.errors import ABTestConflict, UnknownABTest
from hook_kernel.kernel import HookKernel
from hook_kernel.logging_config import configure_logging
from hook_kernel.models.action import Action
from hook_kernel.models.config import KernelConfig
from hook_kernel.models.parameters import ProposalStatus
from hook_kernel.tuning.statistics import pattern_effectiveness


# --- Request/Response Models ---

class ActionSubmitRequest(BaseModel):
    id: Optional[str] = None
    target: str
    payload: dict = {}
    metadata: dict = {}
    category: Optional[str] = None


class FeedbackRequest(BaseModel):
    should_block: bool


class ABTestCreateRequest(BaseModel):
    rule: str
    parameter: str
    variant_value: Union[int, float, str]
    duration_seconds: float = Field(gt=0, default=3600.0)
    sample_ratio: float = Field(gt=0.0, lt=1.0, default=0.5)


class PurgeRequest(BaseModel):
    older_than_days: Optional[int] = Field(ge=0, default=None)


# --- Application Factory ---

def create_app(
    kernel: Optional[HookKernel] = None,
    config: Optional[KernelConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    if kernel is None:
        configure_logging()
        kernel = HookKernel(config or KernelConfig.from_env())
        kernel.discover_rules()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run the tuning scheduler for as long as the app serves requests."""
        stop = asyncio.Event()
        task = asyncio.create_task(kernel.scheduler.run_async(stop))
        await asyncio.sleep(0)
        try:
            yield
        finally:
            stop.set()
            await task

    app = FastAPI(
        title="Hook Kernel API",
        description="Rule enforcement with adaptive parameter tuning",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.kernel = kernel
    registry = kernel.registry
    store = kernel.store
    tuner = kernel.tuner

    def require_rule(rule: str) -> None:
        if rule not in registry:
            raise HTTPException(404, "Rule not found")

    # === ACTIONS ===

    @app.post("/actions")
    async def submit_action(req: ActionSubmitRequest):
        """Validate an action against every applicable rule."""
        action = Action(
            id=req.id or f"act_{uuid4().hex[:12]}",
            target=req.target,
            payload=req.payload,
            metadata=req.metadata,
            category=req.category,
        )
        decision = await kernel.engine.submit_async(action)
        return decision.model_dump(mode="json")

    @app.post("/actions/{action_id}/feedback")
    def report_feedback(action_id: str, req: FeedbackRequest):
        """Ground truth for a recent decision."""
        if not kernel.engine.report_feedback(action_id, req.should_block):
            raise HTTPException(404, "Action not found among recent decisions")
        return {"status": "recorded", "action_id": action_id}

    # === RULES ===

    @app.get("/rules")
    def list_rules():
        return [e.model_dump(mode="json") for e in registry.entries()]

    @app.get("/rules/{rule}/executions")
    def get_rule_executions(rule: str, limit: int = 50):
        """Most recent executions, newest first."""
        require_rule(rule)
        return [r.model_dump(mode="json") for r in store.recent_executions(rule, limit)]

    @app.get("/rules/{rule}/patterns")
    def get_rule_patterns(rule: str):
        """Pattern counters with derived effectiveness."""
        require_rule(rule)
        return [
            {
                **stat.model_dump(mode="json"),
                "effectiveness": pattern_effectiveness(stat).model_dump(),
            }
            for stat in store.pattern_effectiveness(rule)
        ]

    @app.get("/metrics")
    def get_metrics(window_minutes: float = 60.0, rule: Optional[str] = None):
        """Aggregate execution metrics over a trailing window."""
        metrics = store.system_metrics(timedelta(minutes=window_minutes), rule=rule)
        return metrics.model_dump(mode="json")

    # === PARAMETERS ===

    @app.get("/parameters")
    def get_parameters():
        return kernel.parameters.values()

    @app.get("/parameters/history")
    def get_parameter_history(name: Optional[str] = None, limit: int = 100):
        return [c.model_dump(mode="json") for c in store.parameter_history(name, limit)]

    # === OPTIMIZATIONS ===

    @app.post("/optimizations/run")
    def run_optimizations():
        """Force a tuning cycle."""
        return tuner.run_cycle().model_dump(mode="json")

    @app.post("/optimizations/{rule}/timeout")
    def optimize_timeout(rule: str):
        require_rule(rule)
        return tuner.optimize_timeout(rule).model_dump(mode="json")

    @app.post("/optimizations/{rule}/patterns")
    def refine_patterns(rule: str):
        require_rule(rule)
        return tuner.refine_patterns(rule).model_dump(mode="json")

    @app.post("/optimizations/{rule}/strictness")
    def adjust_strictness(rule: str):
        require_rule(rule)
        return tuner.adjust_strictness(rule).model_dump(mode="json")

    @app.get("/optimizations")
    def list_optimizations(status: Optional[ProposalStatus] = None):
        """Proposals known to the change monitor."""
        return [p.model_dump(mode="json") for p in kernel.monitor.proposals(status)]

    @app.get("/optimizations/results")
    def list_optimization_results(rule: Optional[str] = None, limit: int = 100):
        return [r.model_dump(mode="json") for r in store.optimization_results(rule=rule, limit=limit)]

    # === A/B TESTS ===

    @app.post("/ab-tests")
    def start_ab_test(req: ABTestCreateRequest):
        require_rule(req.rule)
        try:
            test = tuner.start_ab_test(
                req.rule,
                req.parameter,
                req.variant_value,
                duration_seconds=req.duration_seconds,
                sample_ratio=req.sample_ratio,
            )
        except ABTestConflict as e:
            raise HTTPException(409, str(e))
        except ValueError as e:
            raise HTTPException(422, str(e))
        return test.model_dump(mode="json")

    @app.get("/ab-tests")
    def list_ab_tests():
        return [t.model_dump(mode="json") for t in tuner.list_ab_tests()]

    @app.get("/ab-tests/{test_id}")
    def get_ab_test(test_id: str):
        try:
            test = tuner.get_ab_test(test_id)
        except UnknownABTest:
            raise HTTPException(404, "A/B test not found")
        return test.model_dump(mode="json")

    @app.post("/ab-tests/{test_id}/stop")
    def stop_ab_test(test_id: str):
        """Conclude a test early; a winning variant is applied."""
        try:
            result = tuner.stop_ab_test(test_id)
        except UnknownABTest:
            raise HTTPException(404, "A/B test not found")
        return result.model_dump(mode="json")

    # === CHAIN ===

    @app.get("/chain")
    def get_chain():
        return kernel.chain.report().model_dump(mode="json")

    @app.get("/chain/text", response_class=PlainTextResponse)
    def get_chain_text():
        return render_text(kernel.chain.report())

    # === MAINTENANCE ===

    @app.get("/scheduler/status")
    def scheduler_status():
        return {
            "status": kernel.scheduler.status,
            "jobs": [job.to_dict() for job in kernel.scheduler.jobs],
        }

    @app.post("/maintenance/purge")
    def purge_executions(req: Optional[PurgeRequest] = None):
        """Drop raw executions past retention. Pattern statistics are kept."""
        days = kernel.config.store.retention_days
        if req is not None and req.older_than_days is not None:
            days = req.older_than_days
        deleted = store.purge_executions(timedelta(days=days))
        return {"deleted": deleted, "older_than_days": days}

    return app


# Default application instance
app = create_app()
