"""
Diagnostic API routes for expgate.
The manager is owned by the application and read from app.state.
"""
import time

from fastapi import APIRouter, HTTPException, Request
from datadog import statsd

from expgate.config import config
from expgate.logging_config import setup_logging
from expgate.manager import ExperimentsManager, ManagerState
from expgate.models import ExperimentsStatusResponse, HealthResponse, MembershipResponse

logger = setup_logging()
router = APIRouter()


def get_manager(request: Request) -> ExperimentsManager:
    manager = getattr(request.app.state, "experiments", None)
    if manager is None:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "experiments_unavailable",
                "message": "Experiments manager is not running",
                "request_id": getattr(request.state, "request_id", "unknown"),
            },
        )
    return manager


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check reporting the experiments manager state."""
    manager = get_manager(request)
    uptime = int(time.time() - request.app.state.start_time)

    statsd.gauge("app.uptime.seconds", uptime)
    statsd.increment("app.health.checks.total")

    return HealthResponse(
        status="healthy" if manager.state is ManagerState.READY else "starting",
        service=config.DD_SERVICE,
        version=config.DD_VERSION,
        experiments=manager.source.value if manager.source else manager.state.value,
        uptime_seconds=uptime,
    )


@router.get("/experiments", response_model=ExperimentsStatusResponse)
async def experiments_status(request: Request):
    """List the experiments and control arms this installation belongs to."""
    manager = get_manager(request)
    return ExperimentsStatusResponse(
        state=manager.state.value,
        source=manager.source.value if manager.source else None,
        installation_id=manager.installation_id,
        user_experiments=manager.user_experiments,
    )


@router.get("/experiments/{name}", response_model=MembershipResponse)
async def experiment_membership(name: str, request: Request):
    """Membership check; waits for initialization if it is still running."""
    manager = get_manager(request)
    member = await manager.in_experiment(name)
    logger.info("Membership queried", extra={"exp_name": name})
    return MembershipResponse(name=name, in_experiment=member)
