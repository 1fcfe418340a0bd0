"""FastAPI/Starlette enforcement.

    app = FastAPI()
    install_enforcement(app, AuthorizationGateway.from_config(), exempt_paths=("/healthz",))

Every request except those to ``exempt_paths`` is evaluated before it reaches
a route. A blocked request gets ``error.as_dict()`` as JSON with the error's
``http_status`` (401 authn, 403 deny, 502/503 when no decision was possible).
The permitted outcome is available to routes as ``request.state.authorization``.
"""

from __future__ import annotations

from typing import Any, Iterable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .context import RequestMeta
from .errors import GatewayError
from .gateway import AuthorizationGateway


def error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=int(exc.http_status or 403), content=exc.as_dict())


def install_enforcement(app: FastAPI, gateway: AuthorizationGateway, exempt_paths: Iterable[str] = ()) -> FastAPI:
    exempt = frozenset(exempt_paths)

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        return error_response(exc)

    @app.middleware("http")
    async def _enforce_policy(request: Request, call_next: Any):
        if request.url.path in exempt:
            return await call_next(request)
        # The pipeline blocks on network I/O; keep it off the event loop.
        outcome = await run_in_threadpool(gateway.evaluate, RequestMeta.from_asgi_scope(request.scope))
        failure = outcome.failure
        if failure is not None:
            return error_response(failure)
        request.state.authorization = outcome
        return await call_next(request)

    return app
