# Overview: Atomic document number allocation (sale numbers).

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..models import DocumentSequence


def next_document_number(session, *, document_type: str, prefix: str, pad: int = 6) -> str:
    """
    Allocate the next number for a document type inside the caller's transaction.

    The increment is a single UPDATE, so concurrent allocators never share a
    number. Nothing is committed here.
    """
    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = session.execute(stmt)
    if result.rowcount:
        current = (
            session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type)
            .scalar()
        )
        next_num = current - 1
    else:
        savepoint = session.begin_nested()
        try:
            session.add(DocumentSequence(document_type=document_type, next_number=2))
            session.flush()
            savepoint.commit()
            next_num = 1
        except IntegrityError:
            savepoint.rollback()
            session.execute(stmt)
            current = (
                session.query(DocumentSequence.next_number)
                .filter_by(document_type=document_type)
                .scalar()
            )
            next_num = current - 1

    return f"{prefix}-{next_num:0{pad}d}"
