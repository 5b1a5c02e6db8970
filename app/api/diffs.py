"""
Public diff read path.

Only diffs stored as plaintext JSON are served. Encrypted and missing diffs
both return the same 404 so the endpoint does not reveal which ids exist.
"""

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas.sync import PublicDiffResponse
from ..services.sync_service import SyncService

router = APIRouter(prefix="/diff", tags=["diffs"])

PUBLIC_CACHE_CONTROL = "public, max-age=86400"


@router.get("/{diff_id}/public", response_model=PublicDiffResponse)
async def read_public_diff(diff_id: str, response: Response, db: Session = Depends(get_db)):
    try:
        found = SyncService.get_public_diff(db, diff_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    if found is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Diff not found")

    row, payload = found
    response.headers["Cache-Control"] = PUBLIC_CACHE_CONTROL
    response.headers["Cache-Tag"] = f"diff-{diff_id}"
    return PublicDiffResponse(
        id=row.id,
        content=payload.get("content") or "",
        title=payload.get("title"),
        generated_at=payload.get("generated_at"),
        profile_name=(row.profile.name if row.profile else None) or "Anonymous",
    )
