from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from portal.erp.client import ErpClient


bearer_scheme = HTTPBearer(auto_error=False)


async def get_erp_authorization(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """The caller's ERP credentials, forwarded verbatim. Tokens are validated by the ERP itself."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return f"{credentials.scheme} {credentials.credentials}"


async def get_erp_client(
    request: Request,
    authorization: str = Depends(get_erp_authorization),
) -> ErpClient:
    return ErpClient(request.app.state.erp_http, authorization)
