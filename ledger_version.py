from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from models import LedgerVersion


def current_mutation_version(session: Session, user_id: int) -> str:
    version = session.scalar(
        select(LedgerVersion.version).where(LedgerVersion.user_id == user_id)
    )
    return str(version or 0)


def bump_mutation_version(session: Session, user_id: int) -> None:
    """Advance the scope's version token; callers commit afterwards.

    Every write to any record in the scope must call this, whether or not
    the write can affect a given filter. The first write in a scope creates
    the row in the same statement, so concurrent first writers cannot both
    insert it.
    """
    now = datetime.utcnow()
    stmt = insert(LedgerVersion).values(user_id=user_id, version=1, mutated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[LedgerVersion.user_id],
        set_={"version": LedgerVersion.version + 1, "mutated_at": now},
    )
    session.execute(stmt)
