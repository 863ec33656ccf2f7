from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, status

from app.domain.errors import InvalidStateError, NotFoundError, ValidationError


def _detail(exc: Exception, error_code: str) -> dict:
    return {"error_code": error_code, "message": str(exc)}


@contextmanager
def domain_errors() -> Iterator[None]:
    """Translate service-layer errors into the API error envelope."""
    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_detail(exc, exc.error_code)) from exc
    except InvalidStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=_detail(exc, exc.error_code)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_detail(exc, exc.error_code)) from exc
