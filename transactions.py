"""Atomic multi-collection operations: checkout, return and bulk replace.

A unit of work receives the open ``Transaction`` and returns a ``TxResult``.
The coordinator commits on ``TxStatus.OK`` and aborts on any other tag, then
raises the matching error. Business rules never raise from inside the work
function, so an aborted unit leaves nothing behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, Mapping

from database import BOOKS, LOANS
from errors import InvalidLoanState, LibraryError, Unavailable
from loan import ACTIVE, RETURNED, Loan
from record_store import RecordStore, Transaction

logger = logging.getLogger(__name__)


class TxStatus(Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    INVALID_LOAN_STATE = "invalid_loan_state"


_ERRORS = {
    TxStatus.UNAVAILABLE: Unavailable,
    TxStatus.INVALID_LOAN_STATE: InvalidLoanState,
}


@dataclass(frozen=True)
class TxResult:
    status: TxStatus
    value: Any = None
    message: str = ""

    @classmethod
    def ok(cls, value: Any = None) -> "TxResult":
        return cls(TxStatus.OK, value)

    @classmethod
    def fail(cls, status: TxStatus, message: str) -> "TxResult":
        return cls(status, None, message)

    @property
    def succeeded(self) -> bool:
        return self.status is TxStatus.OK

    def error(self) -> LibraryError:
        return _ERRORS[self.status](self.message)


Work = Callable[[Transaction], TxResult]


class TransactionCoordinator:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def run(self, work: Work, name: str = "transaction") -> Any:
        """Run ``work`` in one write transaction and return its value."""
        with self.store.transaction() as tx:
            result = work(tx)
            if not result.succeeded:
                tx.abort()
        if not result.succeeded:
            logger.info(f"{name} aborted: {result.status.value} ({result.message})")
            raise result.error()
        logger.debug(f"{name} committed")
        return result.value

    # ------------------------- Domain transactions ------------------------- #
    def checkout(self, loan: Loan) -> Loan:
        """Take one copy off the shelf and record the loan, or do neither."""

        def work(tx: Transaction) -> TxResult:
            book = tx.get(BOOKS, loan.book_id)
            if book is None or book["availableCopies"] <= 0:
                return TxResult.fail(TxStatus.UNAVAILABLE, "Book is not available for loan.")
            book["availableCopies"] -= 1
            tx.put(BOOKS, book)

            record = loan.to_dict()
            record.pop("id", None)
            record["status"] = ACTIVE
            record["returnDate"] = None
            record["id"] = tx.put(LOANS, record)
            return TxResult.ok(Loan.from_dict(record))

        return self.run(work, name=f"checkout of book {loan.book_id}")

    def return_loan(self, loan_id: int, return_date: date) -> Loan:
        """Close an active loan and put the copy back on the shelf."""

        def work(tx: Transaction) -> TxResult:
            record = tx.get(LOANS, loan_id)
            if record is None or record["status"] == RETURNED:
                return TxResult.fail(TxStatus.INVALID_LOAN_STATE, "Loan does not exist or was already returned.")
            record["status"] = RETURNED
            record["returnDate"] = return_date.isoformat()
            tx.put(LOANS, record)

            book = tx.get(BOOKS, record["bookId"])
            if book is not None:
                book["availableCopies"] += 1
                tx.put(BOOKS, book)
            return TxResult.ok(Loan.from_dict(record))

        return self.run(work, name=f"return of loan {loan_id}")

    # ------------------------- Bulk transaction ------------------------- #
    def replace_all(self, snapshot: Mapping) -> Dict[str, int]:
        """Swap the whole database for ``snapshot``; prior data survives any failure."""
        return self.run(lambda tx: TxResult.ok(tx.replace_all(snapshot)), name="bulk replace")
