"""
Exception handlers for the expgate diagnostic API.
"""
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

from expgate.errors import ExperimentsNotReady


async def http_exception_handler(request: Request, exc: HTTPException):
    """Custom exception handler to ensure consistent error responses"""
    request_id = getattr(request.state, 'request_id', 'unknown')

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.detail if isinstance(exc.detail, dict) else {
            "error": "http_error",
            "message": str(exc.detail),
            "request_id": request_id
        }
    )


async def experiments_not_ready_handler(request: Request, exc: ExperimentsNotReady):
    """Membership was read before the manager finished initializing"""
    request_id = getattr(request.state, 'request_id', 'unknown')

    return JSONResponse(
        status_code=503,
        content={
            "error": "experiments_not_ready",
            "message": str(exc),
            "request_id": request_id
        }
    )
