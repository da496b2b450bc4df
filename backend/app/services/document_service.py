# Overview: Sequential human-readable numbers for sales, POs, GRNs, returns and transfers.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from .exceptions import ValidationError


# document_type -> prefix
DOCUMENT_PREFIXES = {
    "SALE": "SAL",
    "PURCHASE_ORDER": "PO",
    "GRN": "GRN",
    "RETURN": "RET",
    "TRANSFER": "TRF",
}


def next_document_number(document_type: str, *, pad: int = 6) -> str:
    """
    Allocate the next number for a document type (e.g. "GRN-000001").

    Runs inside the caller's unit of work: the sequence bump commits or
    rolls back together with the document that uses it, so an aborted
    receive never burns a GRN number.
    """
    prefix = DOCUMENT_PREFIXES.get(document_type)
    if not prefix:
        raise ValidationError(f"Unknown document type: {document_type}")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type)
            .scalar()
        )
        next_num = current - 1
    else:
        seq = DocumentSequence(document_type=document_type, next_number=2)
        try:
            with db.session.begin_nested():
                db.session.add(seq)
            next_num = 1
        except IntegrityError:
            # Another writer created the row first
            db.session.execute(stmt)
            current = (
                db.session.query(DocumentSequence.next_number)
                .filter_by(document_type=document_type)
                .scalar()
            )
            next_num = current - 1

    return f"{prefix}-{next_num:0{pad}d}"
