import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from stars_relay.schemas.health import HealthResponse, ReadinessResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check(request: Request):
    """Monitor state plus the payments stuck in processing."""
    monitor = request.app.state.monitor
    report = await monitor.diagnose_stuck()
    return HealthResponse(
        status="healthy" if report.count == 0 else "degraded",
        timestamp=datetime.now(timezone.utc),
        monitor_running=monitor.is_running,
        simulation=request.app.state.purchaser.simulated,
        stuck_transactions=report.count,
        stuck_details=report.details,
    )


@router.get("/ready", response_model=ReadinessResponse, summary="Readiness check")
async def readiness_check(request: Request):
    """
    Readiness check - verifies the ledger database and toncenter are reachable.
    """
    checks = {}

    try:
        await request.app.state.ledger.get_stats()
        checks["database"] = True
    except Exception as e:
        logger.warning(f"ready: database check failed: {e}")
        checks["database"] = False

    try:
        await request.app.state.wallet.get_balance()
        checks["toncenter"] = True
    except Exception as e:
        logger.warning(f"ready: toncenter check failed: {e}")
        checks["toncenter"] = False

    all_healthy = all(checks.values())

    return ReadinessResponse(
        status="ready" if all_healthy else "degraded",
        checks=checks,
        timestamp=datetime.now(timezone.utc),
    )
