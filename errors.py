"""
Exceptions raised by the book repository.

Lookup failures subclass LookupError and rule violations subclass ValueError,
so callers that do not care about the exact kind can catch the builtin.
"""


class BookNotFound(LookupError):
    def __init__(self, book_id: str, message: str = "Book not found"):
        super().__init__(message)
        self.book_id = book_id


class InvalidBookId(BookNotFound):
    """The id is not a well-formed ObjectId, so no book can match it."""

    def __init__(self, book_id: str):
        super().__init__(book_id, "Book not found")


class NoActiveBorrow(LookupError):
    def __init__(self, book_id: str, borrower_name: str):
        super().__init__("No active borrow record found")
        self.book_id = book_id
        self.borrower_name = borrower_name


class NoCopiesAvailable(ValueError):
    def __init__(self, book_id: str):
        super().__init__("No copies available")
        self.book_id = book_id


class InvalidCopyCounts(ValueError):
    pass
