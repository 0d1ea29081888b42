import logging
from typing import Any, Callable, Dict, List, Optional

from book import Book
from config import settings
from email_service import EmailService
from errors import ConflictError, NotFoundError, ValidationError
from lending import LendingEngine, most_common_subject
from models import BookReview, Course, CourseBook, Recommendation, ResearchPaper, User, parse_date
from notifications import EmailDispatcher, Notifier
from permissions import Capability, Role, parse_role, require_capability
from storage import Storage, storage_from_settings
from validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

# Fields a librarian may edit directly; copy counts go through the lending engine.
EDITABLE_BOOK_FIELDS = {
    "title", "author", "publisher", "year", "edition", "description",
    "subjects", "location", "cover_image",
}
NULLABLE_BOOK_FIELDS = {"year", "edition", "cover_image"}


class Library:
    """Manages the catalog, users, courses and research papers.

    Also the composition root: it builds the notifier, e-mail dispatcher and
    lending engine on top of one storage backend.
    """

    def __init__(self, storage: Optional[Storage] = None, email: Optional[EmailService] = None,
                 dispatcher: Optional[EmailDispatcher] = None, clock: Optional[Callable] = None,
                 seed: Optional[bool] = None) -> None:
        self.storage = storage if storage is not None else storage_from_settings()
        self.email = email if email is not None else EmailService()
        self.dispatcher = dispatcher if dispatcher is not None else EmailDispatcher(
            background=settings.email_dispatch_background,
            enabled=settings.enable_email_notifications,
        )
        self.notifier = Notifier(self.storage)
        self.lending = LendingEngine(
            self.storage,
            notifier=self.notifier,
            email=self.email,
            dispatcher=self.dispatcher,
            clock=clock,
        )

        if seed if seed is not None else settings.seed_sample_data:
            if self.storage.count_books() == 0:
                from sample_data import seed_sample_data
                seed_sample_data(self)

    # ------------------------- Users ------------------------- #
    def create_user(self, username: str, name: str, email: str, role: Any = Role.STUDENT,
                    max_books: Optional[int] = None) -> User:
        limit = settings.default_max_books if max_books is None else int(max_books)
        if limit < 0:
            raise ValidationError("max_books cannot be negative.")
        user = User(
            username=TextValidator.require_text(username, "Username"),
            name=TextValidator.require_text(name, "Name"),
            email=TextValidator.require_email(email),
            role=parse_role(role),
            max_books=limit,
        )
        user = self.storage.create_user(user)
        logger.info("Created %s account '%s' (id %s)", user.role.value, user.username, user.id)
        return user

    def get_user(self, user_id: int) -> User:
        user = self.storage.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def find_user(self, username: str) -> Optional[User]:
        return self.storage.get_user_by_username(username)

    def list_users(self, actor: User) -> List[User]:
        require_capability(actor.role, Capability.MANAGE_USERS)
        return self.storage.list_users()

    def set_borrow_limit(self, actor: User, user_id: int, max_books: int) -> User:
        require_capability(actor.role, Capability.MANAGE_USERS)
        if max_books < 0:
            raise ValidationError("max_books cannot be negative.")
        self.get_user(user_id)
        return self.storage.update_user(user_id, max_books=max_books)

    # ------------------------- Catalog ------------------------- #
    def add_book(self, actor: User, book: Book) -> Book:
        """Add a new title. Duplicate ISBNs are refused."""
        require_capability(actor.role, Capability.MANAGE_CATALOG)
        book.isbn = ISBNValidator.normalize_isbn(book.isbn)
        if not ISBNValidator.is_valid_isbn(book.isbn):
            raise ValidationError("Invalid ISBN format.")
        if self.storage.get_book_by_isbn(book.isbn):
            raise ConflictError(f"Book with ISBN {book.isbn} already exists.")
        book.added_by = actor.id
        book = self.storage.create_book(book)
        logger.info("Added book %s (%s) with %d copies", book.id, book.isbn, book.copies_total)
        return book

    def update_book(self, actor: User, book_id: int, copies_total: Optional[int] = None, **changes: Any) -> Book:
        require_capability(actor.role, Capability.MANAGE_CATALOG)
        unknown = set(changes) - EDITABLE_BOOK_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if not changes and copies_total is None:
            raise ValidationError("Nothing to update.")
        cleared = sorted(k for k, v in changes.items() if v is None and k not in NULLABLE_BOOK_FIELDS)
        if cleared:
            raise ValidationError(f"Field(s) cannot be null: {', '.join(cleared)}")

        for key in ("title", "author"):
            if key in changes:
                changes[key] = TextValidator.require_text(changes[key], key.capitalize())
        if "publisher" in changes:
            changes["publisher"] = changes["publisher"].strip()
        if "subjects" in changes:
            subjects = changes["subjects"]
            if isinstance(subjects, str):
                subjects = [subjects]
            changes["subjects"] = [str(s).strip() for s in subjects if s and str(s).strip()]

        self.get_book(book_id)
        return self.lending.edit_book(book_id, changes, copies_total)

    def get_book(self, book_id: int) -> Book:
        book = self.storage.get_book(book_id)
        if book is None:
            raise NotFoundError("Book", book_id)
        return book

    def list_books(self, limit: Optional[int] = None, offset: int = 0) -> List[Book]:
        return self.storage.list_books(limit, offset)

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title, author or ISBN."""
        if query is None or not query.strip():
            raise ValidationError("Search query is required")
        return self.storage.search_books(query.strip())

    def catalog_statistics(self) -> Dict[str, Any]:
        books = self.storage.list_books()
        popular, popular_count = most_common_subject(books)
        return {
            "total_books": len(books),
            "unique_authors": len({b.author for b in books}),
            "total_copies": sum(b.copies_total for b in books),
            "available_copies": sum(b.copies_available for b in books),
            "popular_category": popular,
            "popular_category_count": popular_count,
        }

    # ------------------------- Reviews ------------------------- #
    def add_review(self, actor: User, book_id: int, rating: int, review: Optional[str] = None) -> BookReview:
        self.get_book(book_id)
        return self.storage.create_review(BookReview(
            book_id=book_id,
            user_id=actor.id,
            rating=TextValidator.validate_rating(rating),
            review=review,
        ))

    def book_reviews(self, book_id: int) -> List[Dict[str, Any]]:
        self.get_book(book_id)
        rows = []
        for review in self.storage.list_reviews(book_id):
            user = self.storage.get_user(review.user_id)
            row = review.to_dict()
            row["user_name"] = user.name if user else None
            rows.append(row)
        return rows

    # ------------------------- Courses ------------------------- #
    def create_course(self, actor: User, code: str, name: str, department: str,
                      description: Optional[str] = None) -> Course:
        require_capability(actor.role, Capability.MANAGE_COURSES)
        return self.storage.create_course(Course(
            code=TextValidator.require_text(code, "Course code").upper(),
            name=TextValidator.require_text(name, "Course name"),
            department=TextValidator.require_text(department, "Department"),
            description=description,
        ))

    def list_courses(self) -> List[Course]:
        return self.storage.list_courses()

    def get_course(self, course_id: int) -> Course:
        course = self.storage.get_course(course_id)
        if course is None:
            raise NotFoundError("Course", course_id)
        return course

    def add_course_book(self, actor: User, course_id: int, book_id: int, priority: int = 1,
                        is_required: bool = False) -> CourseBook:
        """Put a book on a course's recommended reading list."""
        require_capability(actor.role, Capability.ASSIGN_COURSE_BOOKS)
        self.get_course(course_id)
        self.get_book(book_id)
        if any(cb.book_id == book_id for cb in self.storage.list_course_books(course_id)):
            raise ConflictError(f"Book {book_id} is already on the reading list for course {course_id}")
        return self.storage.create_course_book(CourseBook(
            course_id=course_id,
            book_id=book_id,
            added_by=actor.id,
            priority=priority,
            is_required=is_required,
        ))

    def course_books(self, course_id: int) -> List[Dict[str, Any]]:
        """Reading list for a course, highest priority (lowest number) first."""
        self.get_course(course_id)
        entries = sorted(self.storage.list_course_books(course_id), key=lambda cb: (cb.priority, cb.id))
        rows = []
        for entry in entries:
            book = self.storage.get_book(entry.book_id)
            row = entry.to_dict()
            row["book"] = book.to_dict() if book else None
            rows.append(row)
        return rows

    # ------------------------- Research papers ------------------------- #
    def add_research_paper(self, actor: User, title: str, author: str, publish_date: Any, subject: str,
                           file_path: str, journal: Optional[str] = None,
                           abstract: Optional[str] = None) -> ResearchPaper:
        require_capability(actor.role, Capability.UPLOAD_RESEARCH)
        published = parse_date(publish_date)
        if published is None:
            raise ValidationError("publish_date is required.")
        return self.storage.create_research_paper(ResearchPaper(
            title=TextValidator.require_text(title, "Title"),
            author=TextValidator.require_text(author, "Author"),
            publish_date=published,
            subject=TextValidator.require_text(subject, "Subject"),
            file_path=TextValidator.require_text(file_path, "File path"),
            uploaded_by=actor.id,
            journal=journal,
            abstract=abstract,
        ))

    def list_research_papers(self, limit: Optional[int] = None, offset: int = 0) -> List[ResearchPaper]:
        return self.storage.list_research_papers(limit, offset)

    def get_research_paper(self, paper_id: int) -> ResearchPaper:
        paper = self.storage.get_research_paper(paper_id)
        if paper is None:
            raise NotFoundError("Research paper", paper_id)
        return paper

    def share_research_paper(self, paper_id: int, to_email: str, link: Optional[str] = None) -> bool:
        """E-mail a paper's download link. Returns whether the provider accepted it."""
        paper = self.get_research_paper(paper_id)
        to_email = TextValidator.require_email(to_email)
        delivered = self.email.share_research_paper(to_email, paper.title, paper.author, link or paper.file_path)
        if not delivered:
            logger.warning("Research paper %s could not be shared with %s", paper_id, to_email)
        return delivered

    # ------------------------- Recommendations ------------------------- #
    def recommend(self, user_id: int, book_id: int, reason: str) -> Recommendation:
        self.get_user(user_id)
        self.get_book(book_id)
        return self.storage.create_recommendation(Recommendation(
            user_id=user_id,
            book_id=book_id,
            reason=TextValidator.require_text(reason, "Reason"),
        ))

    def recommendations_for(self, user_id: int) -> List[Dict[str, Any]]:
        rows = []
        for rec in self.storage.list_recommendations(user_id):
            book = self.storage.get_book(rec.book_id)
            row = rec.to_dict()
            row["book"] = book.to_dict() if book else None
            rows.append(row)
        return rows

    def mark_recommendation_viewed(self, actor: User, recommendation_id: int) -> Recommendation:
        recs = {r.id: r for r in self.storage.list_recommendations(actor.id)}
        if recommendation_id not in recs:
            raise NotFoundError("Recommendation", recommendation_id)
        return self.storage.update_recommendation(recommendation_id, viewed=True)

    def suggest_books(self, user_id: int, limit: int = 3) -> List[Recommendation]:
        """Recommend unread books that share subjects with the user's loans."""
        self.get_user(user_id)
        history = self.storage.list_transactions(user_id=user_id)
        seen = {t.book_id for t in history}
        already = {r.book_id for r in self.storage.list_recommendations(user_id)}
        interests: Dict[str, int] = {}
        for book in self.storage.get_books_by_ids([t.book_id for t in history]):
            for subject in book.subjects:
                interests[subject] = interests.get(subject, 0) + 1
        if not interests:
            return []

        scored = []
        for book in self.storage.list_books():
            if book.id in seen or book.id in already:
                continue
            overlap = [s for s in book.subjects if s in interests]
            if overlap:
                scored.append((-sum(interests[s] for s in overlap), book.id, book, overlap))
        scored.sort(key=lambda item: item[:2])

        return [
            self.recommend(user_id, book.id, f"Because you borrowed books on {', '.join(overlap)}")
            for _, _, book, overlap in scored[:limit]
        ]

    # ------------------------- Lifecycle ------------------------- #
    def close(self) -> None:
        self.dispatcher.close()
        self.storage.close()
