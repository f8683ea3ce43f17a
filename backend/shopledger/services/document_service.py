# Overview: Atomic generation of bill numbers, customer codes and purchase-order numbers.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ConcurrencyConflictError, ValidationError
from ..extensions import db
from ..models import DocumentSequence


DOC_SALE = "SALE"
DOC_CUSTOMER = "CUSTOMER"
DOC_PURCHASE_ORDER = "PURCHASE_ORDER"

# document_type -> (prefix, separator, pad)
DOCUMENT_FORMATS = {
    DOC_SALE: ("INV", "-", 6),
    DOC_CUSTOMER: ("CUST", "", 6),
    DOC_PURCHASE_ORDER: ("PO", "-", 6),
}


def next_document_number(document_type: str) -> str:
    """
    Allocate the next number for a document type inside the caller's transaction.

    The UPDATE ... SET next_number = next_number + 1 takes the row lock, so two
    concurrent allocations can never see the same value. A lost race on the
    very first insert surfaces as ConcurrencyConflictError and is retried by
    the caller's run_with_retry.
    """
    if document_type not in DOCUMENT_FORMATS:
        raise ValidationError(f"Unknown document type: {document_type}")

    prefix, sep, pad = DOCUMENT_FORMATS[document_type]

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
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
        db.session.add(seq)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                "Document sequence initialised concurrently",
                details={"document_type": document_type},
            ) from exc
        next_num = 1

    return f"{prefix}{sep}{next_num:0{pad}d}"
