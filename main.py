import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from config import Settings, settings as default_settings
from errors import BookNotFound, InvalidCopyCounts, NoActiveBorrow, NoCopiesAvailable
from reports import ReportingEngine
from repository import BookRepository
from schemas import Book as BookSchema, BookCreate, BookUpdate, BorrowRecord, BorrowRequest, RatingCreate, RatingRecord, ReturnRequest

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# ----------------------
# Utility helpers
# ----------------------

def serialize(value):
    """Make a stored document JSON friendly: _id -> id, ObjectId -> str, dates -> isoformat."""
    if isinstance(value, dict):
        d = {}
        for k, v in value.items():
            if k == "_id":
                d["id"] = str(v)
            else:
                d[k] = serialize(v)
        return d
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def get_repository(request: Request) -> BookRepository:
    return request.app.state.repository


def get_reports(request: Request) -> ReportingEngine:
    return request.app.state.reports


# ----------------------
# Books Endpoints
# ----------------------

router = APIRouter(prefix="/api/books")


@router.get("/stats/dashboard")
def dashboard_stats(reports: ReportingEngine = Depends(get_reports)):
    return reports.dashboard_stats()


@router.get("/stats/popular")
def popular_books(reports: ReportingEngine = Depends(get_reports)):
    return reports.popular_books()


@router.get("/stats/ratings")
def ratings_report(reports: ReportingEngine = Depends(get_reports)):
    return reports.ratings_report()


@router.get("/stats/low-stock")
def low_stock_books(reports: ReportingEngine = Depends(get_reports)):
    return reports.low_stock_books()


@router.get("/stats/trends")
def borrowing_trends(reports: ReportingEngine = Depends(get_reports)):
    return reports.borrowing_trends()


@router.get("/stats/authors")
def author_stats(reports: ReportingEngine = Depends(get_reports)):
    return reports.author_stats()


@router.get("/stats/borrowers")
def borrower_stats(reports: ReportingEngine = Depends(get_reports)):
    return reports.borrower_stats()


@router.post("", status_code=201)
@router.post("/", status_code=201, include_in_schema=False)
def create_book(book: BookCreate, repo: BookRepository = Depends(get_repository)):
    new_id = repo.create(book)
    return {"message": "Book added successfully", "bookId": new_id}


@router.get("")
@router.get("/", include_in_schema=False)
def list_books(repo: BookRepository = Depends(get_repository)):
    return [serialize(d) for d in repo.list_all()]


@router.get("/{book_id}")
def get_book(book_id: str, repo: BookRepository = Depends(get_repository)):
    return serialize(repo.get_by_id(book_id))


@router.put("/{book_id}")
def update_book(book_id: str, payload: BookUpdate, repo: BookRepository = Depends(get_repository)):
    repo.update(book_id, payload)
    return {"message": "Book updated successfully"}


@router.delete("/{book_id}")
def delete_book(book_id: str, repo: BookRepository = Depends(get_repository)):
    repo.delete(book_id)
    return {"message": "Book deleted successfully"}


# ----------------------
# Circulation Endpoints
# ----------------------

@router.post("/{book_id}/borrow")
def borrow_book(book_id: str, payload: BorrowRequest, repo: BookRepository = Depends(get_repository)):
    repo.borrow(book_id, payload.borrower_name)
    return {"message": "Book borrowed successfully"}


@router.post("/{book_id}/return")
def return_book(book_id: str, payload: ReturnRequest, repo: BookRepository = Depends(get_repository)):
    repo.return_book(book_id, payload.borrower_name)
    return {"message": "Book returned successfully"}


@router.post("/{book_id}/rating")
def add_rating(book_id: str, payload: RatingCreate, repo: BookRepository = Depends(get_repository)):
    repo.add_rating(book_id, payload.rating, payload.review)
    return {"message": "Rating added successfully"}


# ----------------------
# Error handlers
# ----------------------

def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BookNotFound)
    async def book_not_found(request: Request, exc: BookNotFound):
        return error_response(404, str(exc))

    @app.exception_handler(NoActiveBorrow)
    async def no_active_borrow(request: Request, exc: NoActiveBorrow):
        return error_response(400, str(exc))

    @app.exception_handler(NoCopiesAvailable)
    async def no_copies_available(request: Request, exc: NoCopiesAvailable):
        return error_response(400, str(exc))

    @app.exception_handler(InvalidCopyCounts)
    async def invalid_copy_counts(request: Request, exc: InvalidCopyCounts):
        return error_response(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_failed(request: Request, exc: RequestValidationError):
        messages = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            messages.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
        return error_response(422, "; ".join(messages))

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(PyMongoError)
    async def store_failure(request: Request, exc: PyMongoError):
        logger.error("Store failure on %s %s", request.method, request.url.path, exc_info=exc)
        return error_response(500, str(exc))

    @app.exception_handler(Exception)
    async def unexpected_failure(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return error_response(500, str(exc))


# ----------------------
# Application
# ----------------------

def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[BookRepository] = None,
    reports: Optional[ReportingEngine] = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        client = None
        if app.state.repository is None or app.state.reports is None:
            db = database.connect(settings)
            client = db.client
            collection = db[settings.books_collection]
            if app.state.repository is None:
                app.state.repository = BookRepository(collection)
            if app.state.reports is None:
                app.state.reports = ReportingEngine(collection)
        try:
            yield
        finally:
            logger.info("Shutting down")
            database.close(client)

    app = FastAPI(title="Library Catalog API", lifespan=lifespan)
    app.state.repository = repository
    app.state.reports = reports

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    @app.get("/")
    def read_root():
        return {"message": "Library Catalog API is running"}

    @app.get("/api/health")
    def health():
        return {"status": "OK", "message": "Server is running"}

    @app.get("/schema")
    def get_schema():
        # Return JSON schema-like description for viewer tools
        return {
            "book": BookSchema.model_json_schema(by_alias=True),
            "borrowRecord": BorrowRecord.model_json_schema(by_alias=True),
            "rating": RatingRecord.model_json_schema(by_alias=True),
        }

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=default_settings.api_host, port=default_settings.port)
