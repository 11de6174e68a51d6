import logging
import functools
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError

from studio_api.services.errors import ConcurrencyError, ConflictError
from studio_api.utils import now_local_naive

logger = logging.getLogger(__name__)

_SERIALIZATION_MARKERS = (
    "could not serialize access",
    "deadlock detected",
    "database is locked",
    "could not obtain lock",
)


class BaseService:
    """Common plumbing for services bound to one SQLAlchemy session.

    ``clock`` returns the studio's naive local wall-clock time; tests pass a
    fixed one.
    """

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or now_local_naive

    def _now(self) -> datetime:
        return self._clock()

    def _rollback_quietly(self) -> None:
        try:
            self.db.rollback()
        except Exception as e:
            logger.error(f"Rollback failed: {e}")


def _is_serialization_failure(exc: OperationalError) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _SERIALIZATION_MARKERS)


def retry_on_concurrency(func=None, *, max_retries: int = 1):
    """Re-runs a transactional service method after a lost compare-and-update race.

    The wrapped method must roll back its own transaction before raising. When
    the retries are spent the failure surfaces as ``ConflictError``.
    """

    def _decorate(f):
        @functools.wraps(f)
        def wrapper(self, *args, **kwargs):
            attempt = 0
            while True:
                try:
                    return f(self, *args, **kwargs)
                except ConcurrencyError as e:
                    last = e
                except OperationalError as e:
                    if not _is_serialization_failure(e):
                        raise
                    self._rollback_quietly()
                    last = ConcurrencyError(
                        "Concurrent update detected", {"reason": str(e.orig)}
                    )
                if attempt >= max_retries:
                    logger.warning(
                        f"{f.__name__}: concurrency retries exhausted: {last.message}"
                    )
                    raise ConflictError(
                        "The booking changed while it was being processed, please try again",
                        details=last.details,
                        code="CONCURRENT_UPDATE",
                    ) from last
                attempt += 1
                logger.info(f"{f.__name__}: retrying after concurrency conflict ({attempt})")

        return wrapper

    if callable(func):
        return _decorate(func)

    return _decorate
