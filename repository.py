import logging
from typing import Callable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.collection import Collection

from database import create_document, get_documents
from errors import BookNotFound, InvalidBookId, InvalidCopyCounts, NoActiveBorrow, NoCopiesAvailable
from schemas import BORROWED, RETURNED, BookCreate, BookUpdate, BorrowRecord, RatingRecord, utcnow

logger = logging.getLogger(__name__)

# Number of borrowHistory entries still out, as an aggregation expression.
OPEN_LOANS = {
    "$size": {
        "$filter": {
            "input": {"$ifNull": ["$borrowHistory", []]},
            "as": "borrow",
            "cond": {"$eq": ["$$borrow.status", BORROWED]},
        }
    }
}


def to_object_id(book_id: str) -> ObjectId:
    try:
        return ObjectId(book_id)
    except (InvalidId, TypeError):
        raise InvalidBookId(book_id)


class BookRepository:
    """All reads and writes of book documents.

    Each method issues at most one write, so every mutation is atomic at the
    document level. Follow-up reads only decide which error to raise.
    """

    def __init__(self, collection: Collection, clock: Callable = utcnow):
        self.collection = collection
        self._now = clock

    def _exists(self, oid: ObjectId) -> bool:
        return self.collection.find_one({"_id": oid}, {"_id": 1}) is not None

    # ----------------------
    # CRUD
    # ----------------------

    def create(self, payload: BookCreate) -> str:
        book = payload.to_book()
        book.added_date = self._now()
        book_id = create_document(self.collection, book)
        logger.info("Created book %s (%r)", book_id, book.title)
        return book_id

    def list_all(self) -> List[dict]:
        return get_documents(self.collection)

    def get_by_id(self, book_id: str) -> dict:
        doc = self.collection.find_one({"_id": to_object_id(book_id)})
        if not doc:
            raise BookNotFound(book_id)
        return doc

    def update(self, book_id: str, changes: BookUpdate) -> dict:
        oid = to_object_id(book_id)
        update = changes.to_document(exclude_unset=True)
        if not update:
            return self.get_by_id(book_id)

        query = {"_id": oid}
        # Shelf copies plus copies on loan must fit in the total, whichever side changes.
        if "availableCopies" in update or "totalCopies" in update:
            available = update.get("availableCopies", "$availableCopies")
            total = update.get("totalCopies", "$totalCopies")
            query["$expr"] = {"$lte": [{"$add": [available, OPEN_LOANS]}, total]}

        result = self.collection.update_one(query, {"$set": update})
        if result.matched_count == 0:
            if not self._exists(oid):
                raise BookNotFound(book_id)
            raise InvalidCopyCounts("availableCopies plus copies on loan cannot exceed totalCopies")
        logger.info("Updated book %s fields %s", book_id, sorted(update))
        return self.get_by_id(book_id)

    def delete(self, book_id: str) -> None:
        result = self.collection.delete_one({"_id": to_object_id(book_id)})
        if result.deleted_count == 0:
            raise BookNotFound(book_id)
        logger.info("Deleted book %s", book_id)

    # ----------------------
    # Circulation
    # ----------------------

    def borrow(self, book_id: str, borrower_name: str) -> dict:
        oid = to_object_id(book_id)
        record = BorrowRecord(borrower_name=borrower_name, borrow_date=self._now()).to_document()
        result = self.collection.update_one(
            {"_id": oid, "availableCopies": {"$gt": 0}},
            {"$push": {"borrowHistory": record}, "$inc": {"availableCopies": -1}},
        )
        if result.matched_count == 0:
            if not self._exists(oid):
                raise BookNotFound(book_id)
            logger.warning("Borrow of %s by %r rejected: no copies available", book_id, borrower_name)
            raise NoCopiesAvailable(book_id)
        logger.info("Book %s borrowed by %r", book_id, borrower_name)
        return record

    def return_book(self, book_id: str, borrower_name: str) -> None:
        """Close the first open borrow record held by ``borrower_name``.

        The positional operator targets the first array element matched by
        the $elemMatch filter, so lookup and transition are one write.
        """
        oid = to_object_id(book_id)
        result = self.collection.update_one(
            {
                "_id": oid,
                "borrowHistory": {"$elemMatch": {"borrowerName": borrower_name, "status": BORROWED}},
            },
            {
                "$set": {
                    "borrowHistory.$.returnDate": self._now(),
                    "borrowHistory.$.status": RETURNED,
                },
                "$inc": {"availableCopies": 1},
            },
        )
        if result.matched_count == 0:
            if not self._exists(oid):
                raise BookNotFound(book_id)
            logger.warning("Return of %s by %r rejected: no active borrow", book_id, borrower_name)
            raise NoActiveBorrow(book_id, borrower_name)
        logger.info("Book %s returned by %r", book_id, borrower_name)

    # ----------------------
    # Ratings
    # ----------------------

    def add_rating(self, book_id: str, rating: int, review: Optional[str] = None) -> dict:
        record = RatingRecord(rating=rating, review=review, review_date=self._now()).to_document()
        result = self.collection.update_one(
            {"_id": to_object_id(book_id)},
            {"$push": {"ratings": record}},
        )
        if result.matched_count == 0:
            raise BookNotFound(book_id)
        logger.info("Book %s rated %d", book_id, rating)
        return record
