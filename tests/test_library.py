from unittest.mock import MagicMock

import pytest

from book import Book
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from library import Library
from permissions import Role
from sample_data import BOOKS, COURSES, PAPERS, seed_sample_data
from storage import MemStorage
from validators import ISBNValidator


def test_add_list_and_get(lib, faculty):
    assert lib.list_books() == []

    book = lib.add_book(faculty, Book("Ulysses", "James Joyce", "978-0199535675", copies_total=2))

    assert book.id is not None
    assert book.isbn == "9780199535675"
    assert book.added_by == faculty.id
    assert lib.get_book(book.id).copies_available == 2
    assert [b.title for b in lib.list_books()] == ["Ulysses"]


def test_students_cannot_add_books(lib, student):
    with pytest.raises(ForbiddenError):
        lib.add_book(student, Book("Test", "Author", "1234567890"))


def test_add_duplicate_isbn(lib, faculty):
    lib.add_book(faculty, Book("Test Book", "Test Author", "1234567890"))

    with pytest.raises(ConflictError, match="already exists"):
        lib.add_book(faculty, Book("Test Book", "Test Author", "123-456-7890"))

    assert len(lib.list_books()) == 1


@pytest.mark.parametrize("isbn", ["", "123", "12345678901234", "ABCDEFGHIJ"])
def test_invalid_isbn(lib, faculty, isbn):
    with pytest.raises(ValidationError):
        lib.add_book(faculty, Book("Title", "Author", isbn))


def test_empty_title_rejected(lib, faculty):
    with pytest.raises(ValidationError):
        lib.add_book(faculty, Book("  ", "Author", "1234567890"))


def test_update_book(lib, faculty, make_book):
    book = make_book(title="Old Title")

    updated = lib.update_book(faculty, book.id, title="New Title", subjects=["Poetry"])

    assert updated.title == "New Title"
    assert lib.get_book(book.id).subjects == ["Poetry"]


def test_update_book_rejects_counts_and_unknown_fields(lib, faculty, make_book):
    book = make_book()
    with pytest.raises(ValidationError):
        lib.update_book(faculty, book.id, copies_available=0)
    with pytest.raises(ValidationError):
        lib.update_book(faculty, book.id)
    with pytest.raises(NotFoundError):
        lib.update_book(faculty, 999, title="Ghost")


def test_update_book_normalizes_values(lib, faculty, make_book):
    book = make_book()

    updated = lib.update_book(faculty, book.id, subjects=[" Poetry ", "", "  "], publisher="  Penguin ")

    assert updated.subjects == ["Poetry"]
    assert updated.publisher == "Penguin"
    with pytest.raises(ValidationError, match="subjects"):
        lib.update_book(faculty, book.id, subjects=None)
    assert lib.get_book(book.id).subjects == ["Poetry"]


def test_search_books(lib, make_book):
    make_book(title="The Pragmatic Programmer", author="Hunt")
    make_book(title="Clean Code", author="Martin")

    assert [b.title for b in lib.search_books("  pragmatic ")] == ["The Pragmatic Programmer"]
    assert [b.title for b in lib.search_books("MARTIN")] == ["Clean Code"]
    with pytest.raises(ValidationError):
        lib.search_books("   ")


def test_catalog_statistics(lib, make_book, engine, student):
    book = make_book(author="A", copies=2, subjects=["Math"])
    make_book(author="B", copies=1, subjects=["Math", "Art"])
    engine.borrow(book.id, student.id)

    stats = lib.catalog_statistics()

    assert stats["total_books"] == 2
    assert stats["unique_authors"] == 2
    assert stats["total_copies"] == 3
    assert stats["available_copies"] == 2
    assert stats["popular_category"] == "Math"


def test_users(lib, admin, student):
    assert lib.find_user("sam").id == student.id
    assert lib.find_user("nobody") is None
    with pytest.raises(NotFoundError):
        lib.get_user(999)
    with pytest.raises(ValidationError):
        lib.create_user("bad", "Bad", "not-an-email")
    with pytest.raises(ValidationError):
        lib.create_user("bad", "Bad", "bad@example.edu", role="librarian")
    with pytest.raises(ConflictError):
        lib.create_user("sam", "Another Sam", "sam2@example.edu")

    assert {u.username for u in lib.list_users(admin)} == {"admin", "sam"}
    with pytest.raises(ForbiddenError):
        lib.list_users(student)


def test_set_borrow_limit(lib, admin, student, faculty):
    assert lib.set_borrow_limit(admin, student.id, 6).max_books == 6
    with pytest.raises(ForbiddenError):
        lib.set_borrow_limit(faculty, student.id, 10)
    with pytest.raises(ValidationError):
        lib.set_borrow_limit(admin, student.id, -1)


def test_reviews(lib, student, make_book):
    book = make_book()
    lib.add_review(student, book.id, 5, "Loved it")

    reviews = lib.book_reviews(book.id)
    assert reviews[0]["rating"] == 5
    assert reviews[0]["user_name"] == "Sam Student"
    with pytest.raises(ValidationError):
        lib.add_review(student, book.id, 6)
    with pytest.raises(NotFoundError):
        lib.add_review(student, 999, 3)


def test_courses_and_reading_lists(lib, admin, faculty, student, make_book):
    course = lib.create_course(admin, "cs-301", "Algorithms", "Computer Science")
    assert course.code == "CS-301"
    with pytest.raises(ConflictError):
        lib.create_course(admin, "CS-301", "Again", "Computer Science")
    with pytest.raises(ForbiddenError):
        lib.create_course(faculty, "CS-302", "Compilers", "Computer Science")

    optional = make_book(title="Optional")
    required = make_book(title="Required")
    lib.add_course_book(faculty, course.id, optional.id, priority=2)
    lib.add_course_book(faculty, course.id, required.id, priority=1, is_required=True)

    reading = lib.course_books(course.id)
    assert [row["book"]["title"] for row in reading] == ["Required", "Optional"]
    assert reading[0]["is_required"] is True

    with pytest.raises(ConflictError):
        lib.add_course_book(faculty, course.id, optional.id)
    with pytest.raises(ForbiddenError):
        lib.add_course_book(student, course.id, optional.id)
    with pytest.raises(NotFoundError):
        lib.course_books(999)


def test_research_papers(lib, faculty, student):
    paper = lib.add_research_paper(faculty, "Graph Mining", "Jane Doe", "2023-05-01", "Data Science",
                                   "/papers/graph-mining.pdf", journal="JDS")

    assert paper.publish_date.isoformat() == "2023-05-01"
    assert paper.uploaded_by == faculty.id
    assert [p.title for p in lib.list_research_papers()] == ["Graph Mining"]
    assert lib.get_research_paper(paper.id).journal == "JDS"
    with pytest.raises(ForbiddenError):
        lib.add_research_paper(student, "T", "A", "2023-01-01", "S", "/p.pdf")
    with pytest.raises(NotFoundError):
        lib.get_research_paper(999)


def test_share_research_paper(lib, faculty, monkeypatch):
    paper = lib.add_research_paper(faculty, "Graph Mining", "Jane Doe", "2023-05-01", "Data Science",
                                   "/papers/graph-mining.pdf")
    share = MagicMock(return_value=True)
    monkeypatch.setattr(lib.email, "share_research_paper", share)

    assert lib.share_research_paper(paper.id, "peer@example.edu") is True
    share.assert_called_once_with("peer@example.edu", "Graph Mining", "Jane Doe", "/papers/graph-mining.pdf")
    with pytest.raises(ValidationError):
        lib.share_research_paper(paper.id, "nope")


def test_share_without_provider_reports_failure(lib, faculty):
    paper = lib.add_research_paper(faculty, "T", "A", "2023-01-01", "S", "/p.pdf")
    assert lib.share_research_paper(paper.id, "peer@example.edu") is False


def test_recommendations(lib, student, make_book, engine):
    read = make_book(title="Read", subjects=["Databases"])
    related = make_book(title="Related", subjects=["Databases", "SQL"])
    make_book(title="Unrelated", subjects=["Poetry"])
    engine.borrow(read.id, student.id)

    suggested = lib.suggest_books(student.id)
    assert [r.book_id for r in suggested] == [related.id]
    assert lib.suggest_books(student.id) == []

    rows = lib.recommendations_for(student.id)
    assert rows[0]["book"]["title"] == "Related"
    viewed = lib.mark_recommendation_viewed(student, rows[0]["id"])
    assert viewed.viewed is True


def test_recommendation_belongs_to_user(lib, student, student2, make_book):
    book = make_book()
    rec = lib.recommend(student.id, book.id, "Because")
    with pytest.raises(NotFoundError):
        lib.mark_recommendation_viewed(student2, rec.id)


def test_seed_sample_data(clock):
    lib = Library(storage=MemStorage(), dispatcher=MagicMock(), clock=clock, seed=True)

    assert lib.storage.count_books() == len(BOOKS)
    assert len(lib.list_courses()) == len(COURSES)
    assert len(lib.list_research_papers()) == len(PAPERS)
    student = lib.find_user("student")
    assert student.role == Role.STUDENT
    assert len(lib.recommendations_for(student.id)) == 3
    cormen = lib.storage.get_book_by_isbn(ISBNValidator.normalize_isbn("978-0262033848"))
    assert cormen.copies_total == 10

    # a second run against a populated store is a no-op for users
    seed_users = len(lib.storage.list_users())
    with pytest.raises(ConflictError):
        seed_sample_data(lib)
    assert len(lib.storage.list_users()) == seed_users


def test_isbn_checksum():
    assert ISBNValidator.has_valid_checksum("978-0262033848")
    assert ISBNValidator.has_valid_checksum("0-306-40615-2")
    assert not ISBNValidator.has_valid_checksum("978-0262033849")
