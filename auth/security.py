from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi import Depends, HTTPException, status
from config import config
import logging

logger = logging.getLogger(__name__)

# Tokens come from VALID_TOKENS (comma-separated) in the environment or .env
bearer_scheme = HTTPBearer()

def get_current_client(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)):
    """Validates the Bearer token for every secured endpoint."""
    if credentials.scheme.lower() != "bearer" or credentials.credentials not in config.valid_tokens:
        logger.info("Rejected request with an unknown client token.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing Bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # The token identifies the calling client (editor, page renderer)
    return credentials.credentials
