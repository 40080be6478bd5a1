"""
Incident Ledger — Public Verification Router
Unauthenticated token lookup. Every miss is the same 404.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from verification import VerificationResolver

router = APIRouter(prefix="/api/v1/verify", tags=["Public Verification"])


class VerifyRequest(BaseModel):
    token: str = ""


@router.post("")
async def verify_token_body(body: VerifyRequest, db: AsyncSession = Depends(get_db_session)):
    """Verify an incident by token sent in the request body (keeps it out of URLs)."""
    result = await VerificationResolver(db).resolve(body.token)
    return result.to_dict()


@router.get("/{token:path}")
async def verify_token(token: str, db: AsyncSession = Depends(get_db_session)):
    """Verify an incident by token. Empty and slash-containing tokens miss like any other."""
    result = await VerificationResolver(db).resolve(token)
    return result.to_dict()
