from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Liveness of the relay and its payment monitor."""
    status: str = Field(..., description="healthy, or degraded when payments are stuck")
    timestamp: datetime
    monitor_running: bool
    simulation: bool = Field(..., description="True when no wallet signer is configured")
    stuck_transactions: int = Field(..., ge=0)
    stuck_details: List[Dict[str, Any]] = Field(default_factory=list)


class ReadinessResponse(BaseModel):
    """Reachability of the ledger database and toncenter."""
    status: str
    checks: Dict[str, bool]
    timestamp: datetime
