"""
Database Schemas for the Library Catalog

Every book is one document in the "books" collection. Borrow and rating
events are embedded arrays owned by their book:
- Book -> "books"
- BorrowRecord -> Book.borrowHistory[]
- RatingRecord -> Book.ratings[]

Documents use camelCase keys; the models expose snake_case attributes and
serialise by alias.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

BORROWED = "borrowed"
RETURNED = "returned"

BorrowStatus = Literal["borrowed", "returned"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self, **kwargs) -> dict:
        return self.model_dump(by_alias=True, **kwargs)


class BorrowRecord(CamelModel):
    borrower_name: str = Field(..., description="Name of the person holding the copy")
    borrow_date: datetime = Field(default_factory=utcnow, description="When the copy left the shelf")
    return_date: Optional[datetime] = Field(None, description="When the copy came back")
    status: BorrowStatus = Field(BORROWED, description="borrowed until returned")


class RatingRecord(CamelModel):
    rating: int = Field(..., ge=1, le=5, description="Star rating from 1 to 5")
    review: Optional[str] = Field(None, description="Free text review")
    review_date: datetime = Field(default_factory=utcnow, description="When the rating was left")


class Book(CamelModel):
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Author name")
    genre: Optional[str] = Field(None, description="Genre or category")
    isbn: Optional[str] = Field(None, description="ISBN identifier")
    publisher: Optional[str] = Field(None, description="Publisher name")
    published_year: Optional[int] = Field(None, description="Year of publication")
    description: Optional[str] = Field(None, description="Short blurb")
    total_copies: int = Field(1, ge=0, description="Total number of copies owned")
    available_copies: int = Field(1, ge=0, description="Copies currently on the shelf")
    borrow_history: List[BorrowRecord] = Field(default_factory=list)
    ratings: List[RatingRecord] = Field(default_factory=list)
    added_date: datetime = Field(default_factory=utcnow, description="When the book was catalogued")


# ----------------------
# Request models
# ----------------------

class BookCreate(CamelModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    genre: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    description: Optional[str] = None
    total_copies: int = Field(1, ge=0)
    available_copies: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_copies(self):
        if self.available_copies is None:
            self.available_copies = self.total_copies
        if self.available_copies > self.total_copies:
            raise ValueError("availableCopies cannot exceed totalCopies")
        return self

    def to_book(self) -> Book:
        return Book(**self.model_dump())


class BookUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    genre: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    description: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=0)
    available_copies: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_copies(self):
        # Explicit nulls clear optional fields; these ones cannot be cleared.
        for name in ("title", "author", "total_copies", "available_copies"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{to_camel(name)} cannot be null")
        if (
            self.total_copies is not None
            and self.available_copies is not None
            and self.available_copies > self.total_copies
        ):
            raise ValueError("availableCopies cannot exceed totalCopies")
        return self


class BorrowRequest(CamelModel):
    borrower_name: str = Field(..., min_length=1)


class ReturnRequest(CamelModel):
    borrower_name: str = Field(..., min_length=1)


class RatingCreate(CamelModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None
