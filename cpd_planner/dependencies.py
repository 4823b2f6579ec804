from fastapi import HTTPException, Request

from cpd_planner.services.outcomes import NotFoundError, Outcome


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def http_error_for(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def raise_for_failed(outcome: Outcome, reason: str | None) -> None:
    # DEFERRED is a normal answer; only a store failure is surfaced as an error.
    if outcome == Outcome.FAILED:
        raise HTTPException(status_code=503, detail=reason or 'Data store unavailable, retry later')
