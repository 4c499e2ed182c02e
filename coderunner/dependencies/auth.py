"""Authentication dependencies for API endpoints."""

# Standard library imports
import hmac
from typing import Annotated, Optional

# Third-party imports
import structlog
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

# Local application imports
from ..config import settings
from ..models import AuthenticationRequiredError
from ..utils.request_helpers import extract_api_key

logger = structlog.get_logger(__name__)
security = HTTPBearer(auto_error=False)


def is_valid_api_key(api_key: str) -> bool:
    """Compare against every configured key in constant time."""
    valid = False
    for candidate in settings.get_valid_api_keys():
        if hmac.compare_digest(api_key.encode(), candidate.encode()):
            valid = True
    return valid


async def verify_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Verify API key authentication.
    This dependency can be used in addition to middleware for extra security.
    """
    # First check if middleware already authenticated the request
    if getattr(request.state, "authenticated", False):
        return getattr(request.state, "api_key", "")

    api_key = extract_api_key(request)

    if not api_key:
        logger.warning("No API key provided in request")
        raise HTTPException(
            status_code=401,
            detail="API key required. Provide it in x-api-key header or Authorization header.",
        )

    if not is_valid_api_key(api_key):
        logger.warning("Invalid API key provided")
        raise HTTPException(status_code=401, detail="Invalid API key")

    return api_key


async def verify_master_key(x_api_key: str = Header(...)) -> str:
    """Verify the Master API Key for admin operations."""
    if not settings.master_api_key:
        raise HTTPException(
            status_code=500,
            detail="Admin operations are disabled (no MASTER_API_KEY configured)",
        )

    if not hmac.compare_digest(x_api_key.encode(), settings.master_api_key.encode()):
        raise HTTPException(status_code=403, detail="Invalid Master API Key")
    return x_api_key


def get_current_user_optional(request: Request) -> Optional[str]:
    """The user id verified upstream, if the request carries one."""
    user_id = request.headers.get(settings.user_id_header, "").strip()
    return user_id or None


def get_current_user(request: Request) -> str:
    """The verified user id.

    Identity is established by the auth layer in front of this service and
    forwarded in ``settings.user_id_header``.

    Raises:
        AuthenticationRequiredError: The header is missing or empty
    """
    user_id = get_current_user_optional(request)
    if user_id is None:
        raise AuthenticationRequiredError(
            f"Missing verified user id ({settings.user_id_header} header)"
        )
    return user_id


CurrentUser = Annotated[str, Depends(get_current_user)]
OptionalUser = Annotated[Optional[str], Depends(get_current_user_optional)]
