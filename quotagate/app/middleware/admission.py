"""FastAPI integration for admission decisions.

Denials become HTTP 429 responses carrying ``Retry-After`` and the
rate-limit and quota headers; admitted requests get the same headers on
their response.
"""

from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from quotagate.app.adapters.base import AdmissionDecision, ScopeAdapter, UsageEstimate
from quotagate.app.exceptions import AdmissionDeniedError

IdentifierGetter = Callable[[Request], Awaitable[str]]
EstimateGetter = Callable[[Request], Awaitable[UsageEstimate]]


def denial_exception(decision: AdmissionDecision) -> HTTPException:
    """Build the 429 HTTPException for a denied decision."""
    return HTTPException(
        status_code=429,
        detail={
            "error": decision.reason.value if decision.reason else "denied",
            "message": decision.message,
            "retry_after": decision.retry_after,
        },
        headers=decision.headers(),
    )


def apply_admission_headers(response: Response, decision: AdmissionDecision) -> None:
    """Add rate-limit and quota headers to a response."""
    for name, value in decision.headers().items():
        response.headers[name] = value


def admission_dependency(
    adapter: ScopeAdapter,
    get_identifier: IdentifierGetter,
    get_estimate: Optional[EstimateGetter] = None,
) -> Callable[[Request, Response], Awaitable[AdmissionDecision]]:
    """Create a FastAPI dependency that admits or rejects the request.

    Usage:
        admit = admission_dependency(gate.api_keys, api_key_from_request)

        @app.post("/v1/chat")
        async def chat(decision: AdmissionDecision = Depends(admit)):
            ...
    """

    async def _admit(request: Request, response: Response) -> AdmissionDecision:
        identifier = await get_identifier(request)
        estimate = await get_estimate(request) if get_estimate else UsageEstimate()
        decision = await adapter.check(identifier, estimate)
        if not decision.allowed:
            raise denial_exception(decision)
        apply_admission_headers(response, decision)
        return decision

    return _admit


def register_exception_handlers(app: FastAPI) -> None:
    """Map AdmissionDeniedError raised by ``ScopeAdapter.enforce`` to HTTP 429."""

    @app.exception_handler(AdmissionDeniedError)
    async def admission_denied_handler(
        request: Request, exc: AdmissionDeniedError
    ) -> JSONResponse:
        """Handle AdmissionDeniedError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=exc.headers,
        )
