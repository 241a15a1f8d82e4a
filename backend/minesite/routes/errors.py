from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from ..services.errors import (
    ImmutableShiftError,
    LockedReconciliationError,
    NotFoundError,
)

# purpose: translate service failures into rejections after discarding the transaction
# status: production

_STATUS_BY_ERROR = (
    (ImmutableShiftError, status.HTTP_409_CONFLICT),
    (LockedReconciliationError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
)


def rejection(db: Session, exc: Exception) -> HTTPException:
    db.rollback()
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
