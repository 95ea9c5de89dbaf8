"""Build token endpoint.

The frontend fetches a token on page load and sends it back as
`buildToken` with the build request.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from pwa_maker.api.deps import get_token_issuer
from pwa_maker.api.rate_limit import TOKEN_RATE_LIMIT, TOKEN_RATE_LIMIT_MESSAGE, limiter
from pwa_maker.api.response import success_response
from pwa_maker.models import TokenData
from pwa_maker.services import BuildTokenIssuer

router = APIRouter(prefix="/api", tags=["Build"])


@router.get("/token")
@limiter.limit(TOKEN_RATE_LIMIT, error_message=TOKEN_RATE_LIMIT_MESSAGE)
async def issue_token(
    request: Request,
    issuer: BuildTokenIssuer = Depends(get_token_issuer),
) -> JSONResponse:
    """Issue a fresh short-lived build token."""
    return JSONResponse(
        content=success_response(TokenData(token=issuer.generate_token())),
        headers={"Cache-Control": "no-store"},
    )
