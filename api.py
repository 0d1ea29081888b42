import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from book import Book
from config import configure_logging, settings
from errors import (
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    InsufficientCopiesError,
    LibraryError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from library import Library
from models import User, utcnow
from permissions import Capability, require_capability

configure_logging()
logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        # Drain queued e-mails and close the store on shutdown
        library.close()


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Error mapping ---
# Checked in order; subclasses come before their bases.
ERROR_STATUS = [
    (NotFoundError, 404),
    (ForbiddenError, 403),
    (ConflictError, 409),
    (InsufficientCopiesError, 400),
    (LimitExceededError, 400),
    (ValidationError, 400),
    (ExternalServiceError, 502),
]


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    body: Dict[str, Any] = {"detail": str(exc)}
    if isinstance(exc, ConflictError) and exc.reservation is not None:
        body["reservation"] = jsonable_encoder(exc.reservation.to_dict())
    logger.info("%s %s refused with %s: %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content=body)


# --- Identity ---
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


def get_current_user(user_id: Optional[str] = Security(user_id_header)) -> User:
    """Resolve the acting user from the X-User-Id header."""
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return library.get_user(int(user_id))
    except (ValueError, NotFoundError):
        raise HTTPException(status_code=401, detail="Unknown user")


def require(capability: Capability):
    def dependency(user: User = Depends(get_current_user)) -> User:
        require_capability(user.role, capability)
        return user
    return dependency


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str
    publisher: str = ""
    year: Optional[int] = None
    edition: Optional[str] = None
    description: str = ""
    subjects: List[str] = []
    location: str = ""
    copies_total: int
    copies_available: int
    cover_image: Optional[str] = None
    added_by: Optional[int] = None
    added_at: Optional[datetime] = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str
    publisher: str = ""
    year: Optional[int] = None
    edition: Optional[str] = None
    description: str = ""
    subjects: List[str] = []
    location: str = ""
    copies_total: int = Field(default=1, ge=0)
    cover_image: Optional[str] = None


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    year: Optional[int] = None
    edition: Optional[str] = None
    description: Optional[str] = None
    subjects: Optional[List[str]] = None
    location: Optional[str] = None
    cover_image: Optional[str] = None
    copies_total: Optional[int] = Field(default=None, ge=0)


class TransactionModel(BaseModel):
    id: int
    book_id: int
    user_id: int
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    fine_amount: float = 0.0
    fine_paid: bool = False
    status: str


class BorrowedBookModel(TransactionModel):
    book: Optional[BookModel] = None
    is_overdue: bool = False


class ReservationModel(BaseModel):
    id: int
    book_id: int
    user_id: int
    reservation_date: datetime
    expiry_date: datetime
    status: str
    notified_at: Optional[datetime] = None


class ReservationDetailModel(ReservationModel):
    book: Optional[BookModel] = None
    queue_position: Optional[int] = None


class NotificationModel(BaseModel):
    id: int
    user_id: int
    title: str
    message: str
    type: str
    read: bool
    created_at: datetime
    related_data: Dict[str, Any] = {}


class NotificationListModel(BaseModel):
    unread: int
    notifications: List[NotificationModel]


class DashboardStatsModel(BaseModel):
    borrowed_count: int
    due_soon_count: int
    overdue_count: int
    reservation_count: int
    available_reservations: int
    total_book_count: int
    popular_category: Optional[str] = None
    popular_category_count: int = 0


class ReviewCreateModel(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: Optional[str] = None


class ReviewModel(BaseModel):
    id: int
    book_id: int
    user_id: int
    rating: int
    review: Optional[str] = None
    created_at: datetime
    user_name: Optional[str] = None


class CourseCreateModel(BaseModel):
    code: str
    name: str
    department: str
    description: Optional[str] = None


class CourseModel(CourseCreateModel):
    id: int


class CourseBookCreateModel(BaseModel):
    book_id: int
    priority: int = Field(default=1, ge=1)
    is_required: bool = False


class CourseBookModel(BaseModel):
    id: int
    course_id: int
    book_id: int
    added_by: Optional[int] = None
    priority: int
    is_required: bool
    book: Optional[BookModel] = None


class ResearchPaperCreateModel(BaseModel):
    title: str
    author: str
    publish_date: date
    subject: str
    file_path: str
    journal: Optional[str] = None
    abstract: Optional[str] = None


class ResearchPaperModel(ResearchPaperCreateModel):
    id: int
    uploaded_by: Optional[int] = None
    uploaded_at: Optional[datetime] = None


class ShareRequestModel(BaseModel):
    email: str
    link: Optional[str] = None


class ShareResponseModel(BaseModel):
    paper_id: int
    email: str
    sent: bool


class RecommendationModel(BaseModel):
    id: int
    user_id: int
    book_id: int
    reason: str
    created_at: datetime
    viewed: bool
    book: Optional[BookModel] = None


class ExpireResponseModel(BaseModel):
    expired: int
    reservations: List[ReservationModel]


class RemindResponseModel(BaseModel):
    reminders_sent: int


# --- Health ---
@app.get("/health")
def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": settings.app_version,
        "total_books": library.storage.count_books(),
    }


# --- Catalog ---
@app.get("/books", response_model=List[BookModel])
def list_books(limit: Optional[int] = Query(default=None, ge=1, le=500), offset: int = Query(default=0, ge=0)):
    return [b.to_dict() for b in library.list_books(limit, offset)]


@app.get("/books/search", response_model=List[BookModel])
def search_books(q: str = Query(default="")):
    return [b.to_dict() for b in library.search_books(q)]


@app.post("/books", response_model=BookModel, status_code=201)
def create_book(payload: BookCreateModel, user: User = Depends(require(Capability.MANAGE_CATALOG))):
    book = library.add_book(user, Book(**payload.model_dump()))
    return book.to_dict()


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    return library.get_book(book_id).to_dict()


@app.put("/books/{book_id}", response_model=BookModel)
def update_book(book_id: int, payload: BookUpdateModel, user: User = Depends(get_current_user)):
    changes = payload.model_dump(exclude_unset=True)
    book = library.update_book(user, book_id, **changes)
    return book.to_dict()


# --- Lending ---
@app.post("/books/{book_id}/borrow", response_model=TransactionModel, status_code=201)
def borrow_book(book_id: int, user: User = Depends(require(Capability.BORROW))):
    return library.lending.borrow(book_id, user.id).to_dict()


@app.post("/books/{book_id}/reserve", response_model=ReservationDetailModel, status_code=201)
def reserve_book(book_id: int, user: User = Depends(require(Capability.BORROW))):
    reservation = library.lending.reserve(book_id, user.id)
    row = reservation.to_dict()
    row["queue_position"] = library.lending.queue_position(reservation.id)
    return row


@app.post("/transactions/{transaction_id}/return", response_model=TransactionModel)
def return_book(transaction_id: int, user: User = Depends(get_current_user)):
    return library.lending.return_book(transaction_id, user.id, user.role).to_dict()


@app.post("/transactions/{transaction_id}/pay", response_model=TransactionModel)
def pay_fine(transaction_id: int, user: User = Depends(get_current_user)):
    return library.lending.pay_fine(transaction_id, user.id, user.role).to_dict()


@app.post("/reservations/{reservation_id}/borrow", response_model=TransactionModel, status_code=201)
def borrow_from_reservation(reservation_id: int, user: User = Depends(require(Capability.BORROW))):
    return library.lending.borrow_from_reservation(reservation_id, user.id).to_dict()


@app.post("/reservations/{reservation_id}/cancel", response_model=ReservationModel)
def cancel_reservation(reservation_id: int, user: User = Depends(get_current_user)):
    return library.lending.cancel_reservation(reservation_id, user.id, user.role).to_dict()


# --- Reviews ---
@app.get("/books/{book_id}/reviews", response_model=List[ReviewModel])
def list_reviews(book_id: int):
    return library.book_reviews(book_id)


@app.post("/books/{book_id}/reviews", response_model=ReviewModel, status_code=201)
def add_review(book_id: int, payload: ReviewCreateModel, user: User = Depends(get_current_user)):
    review = library.add_review(user, book_id, payload.rating, payload.review)
    row = review.to_dict()
    row["user_name"] = user.name
    return row


# --- Current user ---
@app.get("/user/books", response_model=List[BorrowedBookModel])
def my_books(user: User = Depends(get_current_user)):
    return library.lending.borrowed_books(user.id)


@app.get("/user/reservations", response_model=List[ReservationDetailModel])
def my_reservations(user: User = Depends(get_current_user)):
    return library.lending.reservations_for(user.id)


@app.get("/user/notifications", response_model=NotificationListModel)
def my_notifications(user: User = Depends(get_current_user)):
    notifications = library.notifier.list_for(user.id)
    return {
        "unread": sum(1 for n in notifications if not n.read),
        "notifications": [n.to_dict() for n in notifications],
    }


@app.post("/notifications/{notification_id}/read", response_model=NotificationModel)
def mark_notification_read(notification_id: int, user: User = Depends(get_current_user)):
    return library.notifier.mark_read(notification_id, user.id, user.role).to_dict()


@app.get("/user/dashboard/stats", response_model=DashboardStatsModel)
def dashboard_stats(user: User = Depends(get_current_user)):
    return library.lending.get_dashboard_stats(user.id).to_dict()


@app.get("/user/recommendations", response_model=List[RecommendationModel])
def my_recommendations(user: User = Depends(get_current_user)):
    return library.recommendations_for(user.id)


# --- Courses ---
@app.get("/courses", response_model=List[CourseModel])
def list_courses():
    return [c.to_dict() for c in library.list_courses()]


@app.post("/courses", response_model=CourseModel, status_code=201)
def create_course(payload: CourseCreateModel, user: User = Depends(get_current_user)):
    return library.create_course(user, **payload.model_dump()).to_dict()


@app.get("/courses/{course_id}", response_model=CourseModel)
def get_course(course_id: int):
    return library.get_course(course_id).to_dict()


@app.get("/courses/{course_id}/books", response_model=List[CourseBookModel])
def course_books(course_id: int):
    return library.course_books(course_id)


@app.post("/courses/{course_id}/books", response_model=CourseBookModel, status_code=201)
def add_course_book(course_id: int, payload: CourseBookCreateModel, user: User = Depends(get_current_user)):
    entry = library.add_course_book(user, course_id, payload.book_id, payload.priority, payload.is_required)
    row = entry.to_dict()
    row["book"] = library.get_book(entry.book_id).to_dict()
    return row


# --- Research papers ---
@app.get("/research-papers", response_model=List[ResearchPaperModel])
def list_research_papers(limit: Optional[int] = Query(default=None, ge=1, le=500),
                         offset: int = Query(default=0, ge=0)):
    return [p.to_dict() for p in library.list_research_papers(limit, offset)]


@app.post("/research-papers", response_model=ResearchPaperModel, status_code=201)
def upload_research_paper(payload: ResearchPaperCreateModel, user: User = Depends(get_current_user)):
    return library.add_research_paper(user, **payload.model_dump()).to_dict()


@app.get("/research-papers/{paper_id}", response_model=ResearchPaperModel)
def get_research_paper(paper_id: int):
    return library.get_research_paper(paper_id).to_dict()


@app.post("/research-papers/{paper_id}/share", response_model=ShareResponseModel)
def share_research_paper(paper_id: int, payload: ShareRequestModel, user: User = Depends(get_current_user)):
    sent = library.share_research_paper(paper_id, payload.email, payload.link)
    return {"paper_id": paper_id, "email": payload.email, "sent": sent}


# --- Admin ---
@app.get("/admin/overview")
def admin_overview(user: User = Depends(require(Capability.VIEW_LIBRARY_OVERVIEW))):
    overview = library.lending.library_overview()
    overview["catalog"] = library.catalog_statistics()
    return overview


@app.post("/admin/maintenance/expire-reservations", response_model=ExpireResponseModel)
def expire_reservations(user: User = Depends(require(Capability.RUN_MAINTENANCE))):
    expired = library.lending.expire_reservations()
    return {"expired": len(expired), "reservations": [r.to_dict() for r in expired]}


@app.post("/admin/maintenance/due-reminders", response_model=RemindResponseModel)
def due_reminders(user: User = Depends(require(Capability.RUN_MAINTENANCE))):
    return {"reminders_sent": library.lending.send_due_reminders()}
