"""
Pass persistence.

All mutations of an existing pass go through ``conditional_update``, a
single ``UPDATE ... WHERE id = ? AND version = ?``. Two writers racing on
the same pass cannot both succeed: the loser sees zero affected rows and
gets a ConflictError.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import update

from errors import ConflictError
from models import Pass, PassStatus

logger = logging.getLogger(__name__)


class PassStore:
    """SQLAlchemy-backed store with per-pass optimistic versioning."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get(self, pass_id: str) -> Optional[Pass]:
        db = self.session_factory()
        try:
            return db.get(Pass, pass_id)
        finally:
            db.close()

    def get_by_barcode(self, barcode: str) -> Optional[Pass]:
        db = self.session_factory()
        try:
            return db.query(Pass).filter(Pass.barcode == barcode).first()
        finally:
            db.close()

    def create(self, record: Pass) -> Pass:
        db = self.session_factory()
        try:
            db.add(record)
            db.commit()
            db.refresh(record)
            return record
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def conditional_update(self, pass_id: str, expected_version: int, patch: Dict) -> Pass:
        """
        Apply ``patch`` only if the stored version still equals
        ``expected_version``. Returns the fresh row.
        """
        db = self.session_factory()
        try:
            result = db.execute(
                update(Pass)
                .where(Pass.id == pass_id, Pass.version == expected_version)
                .values(version=expected_version + 1, **patch)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConflictError(f"Pass {pass_id} was modified concurrently")
            db.commit()
            return db.get(Pass, pass_id)
        except ConflictError:
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_with_retry(
        self,
        load: Callable[[], Pass],
        plan: Callable[[Pass], Dict],
        retries: int = 1,
    ) -> Pass:
        """
        Read, compute a patch and write it conditionally. On conflict the
        pass is re-read and ``plan`` runs again against the fresh row, so it
        may raise if the transition no longer applies.
        """
        attempt = 0
        while True:
            current = load()
            patch = plan(current)
            try:
                return self.conditional_update(current.id, current.version, patch)
            except ConflictError:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.info(f"Conflict on pass {current.id} (version {current.version}), retrying")

    def query(
        self,
        statuses: Optional[Iterable[PassStatus]] = None,
        exclude_statuses: Optional[Iterable[PassStatus]] = None,
        user_ids: Optional[Iterable[str]] = None,
        pass_type: Optional[str] = None,
        order_by: str = "created_at",
        limit: Optional[int] = None,
    ) -> List[Pass]:
        """Filter passes; results are ordered descending on ``order_by``."""
        db = self.session_factory()
        try:
            q = db.query(Pass)
            if statuses is not None:
                q = q.filter(Pass.status.in_(list(statuses)))
            if exclude_statuses is not None:
                q = q.filter(Pass.status.notin_(list(exclude_statuses)))
            if user_ids is not None:
                q = q.filter(Pass.user_id.in_(list(user_ids)))
            if pass_type is not None:
                q = q.filter(Pass.type == pass_type)
            q = q.order_by(getattr(Pass, order_by).desc())
            if limit is not None:
                q = q.limit(limit)
            return q.all()
        finally:
            db.close()
