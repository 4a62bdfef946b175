"""
nsguard Policy Engine Service (port 8400)
------------------------------------------
Serves authorization and network-flow decisions, policy writes, JIT grants and
compliance reports over one Engine. The lifespan owns two periodic tasks:
  - JIT expiry sweeper (NSGUARD_JIT_SWEEP_INTERVAL_SECONDS, clamped to [1, 60])
  - drift scan         (NSGUARD_DRIFT_SCAN_INTERVAL_SECONDS)
Both are cancelled and awaited on shutdown.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nsguard.services.engine import Engine, bootstrap
from nsguard.services.shared.errors import (
    DanglingReferenceError, GrantNotFoundError, InvalidDurationError, InvalidObjectError,
    InvalidTargetError, MalformedSelectorError, NsGuardError, SelfApprovalError,
)

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()

SERVICE_VERSION = "0.1.0"

_STATUS_BY_ERROR: dict[type, int] = {
    DanglingReferenceError: 422,
    MalformedSelectorError: 422,
    InvalidObjectError:     422,
    InvalidTargetError:     422,
    InvalidDurationError:   422,
    GrantNotFoundError:     404,
    SelfApprovalError:      403,
}


def _status_for(exc: NsGuardError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("nsguard_starting")
    if getattr(app.state, "engine", None) is None:
        app.state.engine = bootstrap()
    engine: Engine = app.state.engine

    sweeper = engine.sweeper_task()
    drift = engine.drift_scan_task()
    sweeper.start()
    drift.start()

    yield

    await sweeper.stop()
    await drift.stop()
    engine.close()
    logger.info("nsguard_stopping")


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    app = FastAPI(
        title="nsguard Policy Engine",
        version=SERVICE_VERSION,
        description="Namespace-scoped access control, network isolation, JIT access and compliance.",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NsGuardError)
    async def nsguard_error_handler(request: Request, exc: NsGuardError):
        status = _status_for(exc)
        logger.warning("request_rejected", path=request.url.path, code=exc.code, status=status, object=exc.object_ref)
        return JSONResponse(status_code=status, content=exc.to_dict())

    from nsguard.services.api.routes_policy     import router as policy_router      # noqa: E402
    from nsguard.services.api.routes_authz      import router as authz_router       # noqa: E402
    from nsguard.services.api.routes_network    import router as network_router     # noqa: E402
    from nsguard.services.api.routes_jit        import router as jit_router         # noqa: E402
    from nsguard.services.api.routes_compliance import router as compliance_router  # noqa: E402
    from nsguard.services.api.routes_audit      import router as audit_router       # noqa: E402

    app.include_router(policy_router,     prefix="/api", tags=["Policy"])
    app.include_router(authz_router,      prefix="/api", tags=["Authorization"])
    app.include_router(network_router,    prefix="/api", tags=["Network"])
    app.include_router(jit_router,        prefix="/api", tags=["JIT Grants"])
    app.include_router(compliance_router, prefix="/api", tags=["Compliance"])
    app.include_router(audit_router,      prefix="/api", tags=["Audit"])

    @app.get("/health", tags=["Health"])
    def health():
        current: Optional[Engine] = app.state.engine
        return {
            "status": "healthy",
            "service": "nsguard",
            "version": SERVICE_VERSION,
            "store_version": current.store.version if current else None,
        }

    return app


app = create_app()
