from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Any, Dict, Optional
import firebase_admin
from firebase_admin import auth, credentials
from app.core.config import settings
from app.core.exceptions import AuthenticationError
import json
import logging
import os

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

security = HTTPBearer(auto_error=False)

# Used when TEST_MODE is on and no X-Test-User header is sent
TEST_USER_ID = "test_user_123"

_firebase_ready: Optional[bool] = None


def init_firebase() -> bool:
    """Initialize Firebase Admin SDK if credentials are available."""
    if firebase_admin._apps:
        return True

    if settings.FIREBASE_CREDENTIALS_JSON:
        try:
            cred = credentials.Certificate(json.loads(settings.FIREBASE_CREDENTIALS_JSON))
            firebase_admin.initialize_app(cred)
            logger.info("Firebase Admin SDK initialized from FIREBASE_CREDENTIALS_JSON")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize Firebase from JSON env var: {e}")

    path = settings.FIREBASE_CREDENTIALS_PATH
    if os.path.exists(path):
        try:
            firebase_admin.initialize_app(credentials.Certificate(path))
            logger.info(f"Firebase Admin SDK initialized with: {path}")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize Firebase with {path}: {e}")

    logger.warning("Firebase credentials not found; bearer tokens cannot be verified")
    return False


def firebase_ready() -> bool:
    global _firebase_ready
    if _firebase_ready is None:
        _firebase_ready = init_firebase()
    return _firebase_ready


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_test_user: Optional[str] = Header(None)
) -> Dict[str, Any]:
    """
    Verify the bearer ID token and return its claims (uid, email, name).

    With TEST_MODE=true the X-Test-User header (or a fixed test id) is
    trusted instead.
    """
    if settings.TEST_MODE:
        return {"uid": x_test_user or TEST_USER_ID, "email": None, "name": None}

    if not credentials:
        raise AuthenticationError("Authentication required")

    if not firebase_ready():
        logger.error("Firebase Admin SDK not initialized")
        raise HTTPException(status_code=500, detail="Authentication service not configured")

    try:
        decoded_token = auth.verify_id_token(credentials.credentials)
    except auth.ExpiredIdTokenError:
        raise AuthenticationError("Token has expired")
    except auth.InvalidIdTokenError as e:
        logger.error(f"Invalid token: {e}")
        raise AuthenticationError("Invalid authentication token")
    except Exception as e:
        logger.error(f"Authentication error: {e}")
        raise AuthenticationError("Could not validate credentials")

    return decoded_token


async def get_current_user_id(user: Dict[str, Any] = Depends(get_current_user)) -> str:
    return user["uid"]


@router.get("/verify")
async def verify_token(user_id: str = Depends(get_current_user_id)):
    """Verify the current user's token."""
    return {"valid": True, "user_id": user_id}
