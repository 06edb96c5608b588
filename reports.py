"""
Read-only statistics over the books collection.

Each report is an aggregation pipeline run by the store: grouping, sorting
and limits happen server side. Python only shapes the returned rows
(rounding, labels, zero guards). Nothing is cached; each call sees the
collection as it is at that moment.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pymongo.collection import Collection

from repository import OPEN_LOANS
from schemas import BORROWED, RETURNED, utcnow

logger = logging.getLogger(__name__)

POPULAR_LIMIT = 10
TRENDS_LIMIT = 12
BORROWERS_LIMIT = 20
LOW_STOCK_RATIO = 0.3

MS_PER_DAY = 86400000

STAR_BUCKETS = (
    ("fiveStars", 5),
    ("fourStars", 4),
    ("threeStars", 3),
    ("twoStars", 2),
    ("oneStar", 1),
)

BORROW_COUNT = {"$size": {"$ifNull": ["$borrowHistory", []]}}


def _count_if(field: str, value: Any) -> Dict[str, Any]:
    return {"$sum": {"$cond": [{"$eq": [field, value]}, 1, 0]}}


# ----------------------
# Helpers
# ----------------------

def _mean(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def _round(value: Optional[float], digits: int) -> Optional[float]:
    if value is None:
        return None
    return round(value, digits)


def _percentage(part: float, whole: float) -> float:
    if not whole:
        return 0
    return part / whole * 100


def _days(elapsed) -> Optional[float]:
    """Turn a date difference from the store into days."""
    if elapsed is None:
        return None
    if isinstance(elapsed, timedelta):
        return elapsed.total_seconds() / 86400
    return elapsed / MS_PER_DAY


def _first_count(facet: List[dict], key: str = "count") -> Any:
    if not facet:
        return 0
    return facet[0].get(key) or 0


def _summary(doc: dict) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "title": doc.get("title"),
        "author": doc.get("author"),
        "genre": doc.get("genre"),
    }


def rating_quality(avg_rating: float) -> str:
    if avg_rating >= 4.5:
        return "Excellent"
    if avg_rating >= 4.0:
        return "Very Good"
    if avg_rating >= 3.0:
        return "Good"
    if avg_rating >= 2.0:
        return "Fair"
    return "Poor"


def urgency_level(available: float, total: float) -> str:
    if available == 0:
        return "Critical"
    if available <= 1:
        return "High"
    if available / total <= 0.2:
        return "Medium"
    return "Low"


def author_productivity(total_books: int) -> str:
    if total_books >= 3:
        return "Prolific"
    if total_books == 2:
        return "Moderate"
    return "Single Work"


def reader_type(total_borrows: int) -> str:
    if total_borrows >= 5:
        return "Avid Reader"
    if total_borrows >= 3:
        return "Regular Reader"
    if total_borrows == 2:
        return "Casual Reader"
    return "New Reader"


class ReportingEngine:
    def __init__(self, collection: Collection, clock: Callable[[], datetime] = utcnow):
        self.collection = collection
        self._now = clock

    def _aggregate(self, pipeline: List[dict]) -> List[dict]:
        rows = list(self.collection.aggregate(pipeline))
        logger.debug("Aggregation of %d stages returned %d rows", len(pipeline), len(rows))
        return rows

    # ----------------------
    # Reports
    # ----------------------

    def dashboard_stats(self) -> Dict[str, Any]:
        # Naive UTC, the form dates are stored in.
        year_start = datetime(self._now().year, 1, 1)
        result = self._aggregate([
            {"$facet": {
                "totalBooks": [{"$count": "count"}],
                "totalBorrowed": [
                    {"$match": {"$expr": {"$lt": ["$availableCopies", "$totalCopies"]}}},
                    {"$count": "count"},
                ],
                "byGenre": [
                    {"$group": {
                        "_id": "$genre",
                        "count": {"$sum": 1},
                        "totalCopies": {"$sum": "$totalCopies"},
                        "availableCopies": {"$sum": "$availableCopies"},
                    }},
                    {"$sort": {"count": -1}},
                ],
                "avgRating": [
                    {"$unwind": "$ratings"},
                    {"$group": {
                        "_id": None,
                        "avgRating": {"$avg": "$ratings.rating"},
                        "totalRatings": {"$sum": 1},
                    }},
                ],
                "totalCirculation": [{"$unwind": "$borrowHistory"}, {"$count": "count"}],
                "recentAdditions": [
                    {"$match": {"addedDate": {"$gte": year_start}}},
                    {"$count": "count"},
                ],
                "activeBorrowers": [
                    {"$unwind": "$borrowHistory"},
                    {"$match": {"borrowHistory.status": BORROWED}},
                    {"$group": {"_id": "$borrowHistory.borrowerName"}},
                    {"$count": "count"},
                ],
            }},
        ])
        facets = result[0] if result else {}

        by_genre = []
        for group in facets.get("byGenre", []):
            by_genre.append({
                "genre": group["_id"],
                "count": group["count"],
                "totalCopies": group["totalCopies"],
                "availableCopies": group["availableCopies"],
                "borrowRate": _percentage(
                    group["totalCopies"] - group["availableCopies"], group["totalCopies"]
                ),
            })

        return {
            "totalBooks": _first_count(facets.get("totalBooks")),
            "totalBorrowed": _first_count(facets.get("totalBorrowed")),
            "byGenre": by_genre,
            "avgRating": _first_count(facets.get("avgRating"), "avgRating"),
            "totalRatings": _first_count(facets.get("avgRating"), "totalRatings"),
            "totalCirculation": _first_count(facets.get("totalCirculation")),
            "recentAdditions": _first_count(facets.get("recentAdditions")),
            "activeBorrowers": _first_count(facets.get("activeBorrowers")),
        }

    def popular_books(self) -> List[Dict[str, Any]]:
        docs = self._aggregate([
            {"$addFields": {"borrowCount": BORROW_COUNT, "activeBorrows": OPEN_LOANS}},
            {"$match": {"borrowCount": {"$gt": 0}}},
            {"$sort": {"borrowCount": -1, "_id": 1}},
            {"$limit": POPULAR_LIMIT},
            {"$project": {
                "title": 1, "author": 1, "genre": 1, "ratings": 1,
                "borrowCount": 1, "activeBorrows": 1,
            }},
        ])
        rows = []
        for doc in docs:
            avg_rating = _mean([r.get("rating") for r in doc.get("ratings") or []]) or 0
            rows.append({
                **_summary(doc),
                "borrowCount": doc["borrowCount"],
                "activeBorrows": doc["activeBorrows"],
                "avgRating": round(avg_rating, 1),
                "popularityScore": doc["borrowCount"] + avg_rating * 2,
            })
        return rows

    def ratings_report(self) -> List[Dict[str, Any]]:
        group = {
            "_id": "$_id",
            "title": {"$first": "$title"},
            "author": {"$first": "$author"},
            "genre": {"$first": "$genre"},
            "avgRating": {"$avg": "$ratings.rating"},
            "ratingCount": {"$sum": 1},
        }
        for name, stars in STAR_BUCKETS:
            group[name] = _count_if("$ratings.rating", stars)

        docs = self._aggregate([
            {"$match": {"ratings": {"$exists": True, "$ne": []}}},
            {"$unwind": "$ratings"},
            {"$group": group},
            {"$sort": {"avgRating": -1, "ratingCount": -1}},
        ])
        return [
            {
                **_summary(doc),
                "avgRating": round(doc["avgRating"], 2),
                "ratingCount": doc["ratingCount"],
                "ratingDistribution": {name: doc[name] for name, _ in STAR_BUCKETS},
                "ratingQuality": rating_quality(doc["avgRating"]),
            }
            for doc in docs
        ]

    def low_stock_books(self) -> List[Dict[str, Any]]:
        docs = self._aggregate([
            {"$match": {"$expr": {"$and": [
                {"$gt": ["$totalCopies", 0]},
                {"$lte": ["$availableCopies", {"$multiply": ["$totalCopies", LOW_STOCK_RATIO]}]},
            ]}}},
            {"$addFields": {"activeBorrows": OPEN_LOANS}},
            {"$sort": {"availableCopies": 1, "totalCopies": -1}},
            {"$project": {
                "title": 1, "author": 1, "genre": 1,
                "availableCopies": 1, "totalCopies": 1, "activeBorrows": 1,
            }},
        ])
        return [
            {
                **_summary(doc),
                "availableCopies": doc["availableCopies"],
                "totalCopies": doc["totalCopies"],
                "availabilityPercentage": round(doc["availableCopies"] / doc["totalCopies"] * 100, 1),
                "urgencyLevel": urgency_level(doc["availableCopies"], doc["totalCopies"]),
                "activeBorrows": doc["activeBorrows"],
            }
            for doc in docs
        ]

    def borrowing_trends(self) -> List[Dict[str, Any]]:
        docs = self._aggregate([
            {"$unwind": "$borrowHistory"},
            {"$group": {
                "_id": {
                    "year": {"$year": "$borrowHistory.borrowDate"},
                    "month": {"$month": "$borrowHistory.borrowDate"},
                },
                "totalBorrows": {"$sum": 1},
                "returned": _count_if("$borrowHistory.status", RETURNED),
                "stillBorrowed": _count_if("$borrowHistory.status", BORROWED),
                "uniqueBooks": {"$addToSet": "$title"},
                "uniqueBorrowers": {"$addToSet": "$borrowHistory.borrowerName"},
            }},
            {"$sort": {"_id.year": -1, "_id.month": -1}},
            {"$limit": TRENDS_LIMIT},
        ])
        trends = []
        for doc in docs:
            year, month = doc["_id"]["year"], doc["_id"]["month"]
            trends.append({
                "year": year,
                "month": month,
                "period": f"{year}-{month:02d}",
                "totalBorrows": doc["totalBorrows"],
                "returned": doc["returned"],
                "stillBorrowed": doc["stillBorrowed"],
                "returnRate": round(_percentage(doc["returned"], doc["totalBorrows"]), 1),
                "uniqueBookCount": len(doc["uniqueBooks"]),
                "uniqueBorrowerCount": len(doc["uniqueBorrowers"]),
            })
        return trends

    def author_stats(self) -> List[Dict[str, Any]]:
        docs = self._aggregate([
            {"$addFields": {"borrowCount": BORROW_COUNT}},
            # Most borrowed first, so $first picks each author's most popular title.
            {"$sort": {"borrowCount": -1, "_id": 1}},
            {"$group": {
                "_id": "$author",
                "totalBooks": {"$sum": 1},
                "totalCopies": {"$sum": "$totalCopies"},
                "genres": {"$addToSet": "$genre"},
                "totalBorrows": {"$sum": "$borrowCount"},
                "mostPopularBook": {"$first": "$title"},
            }},
            {"$sort": {"totalBorrows": -1, "_id": 1}},
        ])
        # Mean of the per-book means, unrated books left out.
        ratings = self._aggregate([
            {"$unwind": "$ratings"},
            {"$group": {
                "_id": "$_id",
                "author": {"$first": "$author"},
                "bookRating": {"$avg": "$ratings.rating"},
            }},
            {"$group": {"_id": "$author", "avgRating": {"$avg": "$bookRating"}}},
        ])
        avg_by_author = {row["_id"]: row["avgRating"] for row in ratings}

        rows = []
        for doc in docs:
            genres = [genre for genre in doc["genres"] if genre is not None]
            rows.append({
                "author": doc["_id"],
                "totalBooks": doc["totalBooks"],
                "totalCopies": doc["totalCopies"],
                "genres": genres,
                "genreCount": len(genres),
                "avgRating": _round(avg_by_author.get(doc["_id"]), 2),
                "totalBorrows": doc["totalBorrows"],
                "mostPopularBook": doc["mostPopularBook"],
                "productivity": author_productivity(doc["totalBooks"]),
            })
        return rows

    def borrower_stats(self) -> List[Dict[str, Any]]:
        returned = {"$ne": ["$borrowHistory.returnDate", None]}
        docs = self._aggregate([
            {"$unwind": "$borrowHistory"},
            {"$group": {
                "_id": "$borrowHistory.borrowerName",
                "totalBorrows": {"$sum": 1},
                "returned": _count_if("$borrowHistory.status", RETURNED),
                "currentlyBorrowed": _count_if("$borrowHistory.status", BORROWED),
                "booksRead": {"$addToSet": "$title"},
                "durations": {"$push": {"$cond": [
                    returned,
                    {"$subtract": ["$borrowHistory.returnDate", "$borrowHistory.borrowDate"]},
                    None,
                ]}},
            }},
            {"$sort": {"totalBorrows": -1, "_id": 1}},
            {"$limit": BORROWERS_LIMIT},
        ])
        names = [doc["_id"] for doc in docs]
        # Ties on count go to the genre of the earliest catalogued book.
        genres = self._aggregate([
            {"$unwind": "$borrowHistory"},
            {"$match": {"borrowHistory.borrowerName": {"$in": names}, "genre": {"$ne": None}}},
            {"$group": {
                "_id": {"borrower": "$borrowHistory.borrowerName", "genre": "$genre"},
                "count": {"$sum": 1},
                "firstBook": {"$min": "$_id"},
            }},
            {"$sort": {"count": -1, "firstBook": 1}},
            {"$group": {"_id": "$_id.borrower", "mostReadGenre": {"$first": "$_id.genre"}}},
        ])
        genre_by_borrower = {row["_id"]: row["mostReadGenre"] for row in genres}

        rows = []
        for doc in docs:
            durations = [_days(d) for d in doc["durations"] if d is not None]
            rows.append({
                "borrowerName": doc["_id"],
                "totalBorrows": doc["totalBorrows"],
                "returned": doc["returned"],
                "currentlyBorrowed": doc["currentlyBorrowed"],
                "uniqueBooksRead": len(doc["booksRead"]),
                "returnRate": round(_percentage(doc["returned"], doc["totalBorrows"]), 1),
                "avgBorrowDuration": _round(_mean(durations), 1),
                "mostReadGenre": genre_by_borrower.get(doc["_id"]),
                "readerType": reader_type(doc["totalBorrows"]),
            })
        return rows
