"""Demo data for a fresh library: accounts, books, courses, papers."""

import logging

from book import Book
from permissions import Role

logger = logging.getLogger(__name__)

USERS = [
    {"username": "student", "name": "Sam Student", "email": "student@university.edu", "role": Role.STUDENT},
    {"username": "faculty", "name": "Fran Faculty", "email": "faculty@university.edu", "role": Role.FACULTY, "max_books": 10},
    {"username": "admin", "name": "Ada Admin", "email": "admin@university.edu", "role": Role.ADMIN, "max_books": 10},
]

BOOKS = [
    {
        "title": "Introduction to Algorithms",
        "author": "Thomas H. Cormen",
        "publisher": "MIT Press",
        "isbn": "978-0262033848",
        "year": 2009,
        "edition": "3rd Edition",
        "description": "A comprehensive introduction to data structures and algorithms.",
        "subjects": ["Computer Science", "Algorithms", "Programming"],
        "location": "CS-101",
        "copies_total": 10,
    },
    {
        "title": "Clean Code: A Handbook of Agile Software Craftsmanship",
        "author": "Robert C. Martin",
        "publisher": "Prentice Hall",
        "isbn": "978-0132350884",
        "year": 2008,
        "description": "Principles and practices for writing readable, maintainable code.",
        "subjects": ["Software Engineering", "Programming", "Best Practices"],
        "location": "SE-203",
        "copies_total": 5,
    },
    {
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "publisher": "Addison-Wesley Professional",
        "isbn": "978-0201616224",
        "year": 1999,
        "edition": "1st Edition",
        "description": "The core process of modern software development.",
        "subjects": ["Software Engineering", "Programming", "Professional Development"],
        "location": "SE-205",
        "copies_total": 7,
    },
    {
        "title": "Introduction to Machine Learning with Python",
        "author": "Andreas C. Müller, Sarah Guido",
        "publisher": "O'Reilly Media",
        "isbn": "978-1449369415",
        "year": 2016,
        "description": "A practical guide to machine learning with Python and scikit-learn.",
        "subjects": ["Machine Learning", "Python", "Data Science"],
        "location": "DS-301",
        "copies_total": 8,
    },
    {
        "title": "Database System Concepts",
        "author": "Abraham Silberschatz, Henry F. Korth, S. Sudarshan",
        "publisher": "McGraw-Hill Education",
        "isbn": "978-0073523323",
        "year": 2010,
        "edition": "6th Edition",
        "description": "A unified overview of database systems for undergraduates.",
        "subjects": ["Databases", "Computer Science", "Information Systems"],
        "location": "CS-202",
        "copies_total": 1,
    },
]

COURSES = [
    {"code": "CS-301", "name": "Data Structures and Algorithms", "department": "Computer Science"},
    {"code": "CS-201", "name": "Object-Oriented Programming", "department": "Computer Science"},
    {"code": "CS-405", "name": "Database Management Systems", "department": "Computer Science"},
    {"code": "SE-310", "name": "Software Engineering", "department": "Software Engineering"},
    {"code": "CS-490", "name": "Machine Learning", "department": "Computer Science"},
]

# (course code, isbn, priority, required)
READING_LISTS = [
    ("CS-301", "978-0262033848", 1, True),
    ("CS-201", "978-0132350884", 1, True),
    ("CS-201", "978-0201616224", 2, False),
    ("CS-405", "978-0073523323", 1, True),
    ("SE-310", "978-0132350884", 1, True),
    ("SE-310", "978-0201616224", 2, True),
    ("CS-490", "978-1449369415", 1, True),
]

PAPERS = [
    {
        "title": "Advances in Natural Language Processing for Digital Libraries",
        "author": "Sarah Johnson, Michael Chen",
        "journal": "Journal of Digital Library Technologies",
        "publish_date": "2023-02-15",
        "subject": "Computer Science",
        "abstract": "Recent NLP advances applied to content discovery and metadata extraction.",
        "file_path": "/papers/advances-nlp-digital-libraries.pdf",
    },
    {
        "title": "Machine Learning Approaches to Bibliographic Classification",
        "author": "David Rodriguez, Emily Patel",
        "journal": "International Journal of Library Science",
        "publish_date": "2022-11-30",
        "subject": "Machine Learning",
        "abstract": "A comparison of algorithms for classifying bibliographic records.",
        "file_path": "/papers/ml-bibliographic-classification.pdf",
    },
    {
        "title": "Digital Preservation Strategies for Academic Libraries",
        "author": "Jennifer Martinez, Thomas Wright",
        "journal": "Journal of Library Administration",
        "publish_date": "2022-08-22",
        "subject": "Digital Preservation",
        "abstract": "Current practice for long-term digital content management.",
        "file_path": "/papers/digital-preservation-academic-libraries.pdf",
    },
]

# (isbn, reason) for the demo student
RECOMMENDATIONS = [
    ("978-0262033848", "Based on your interest in computer science courses"),
    ("978-1449369415", "This book on machine learning complements your current studies"),
    ("978-0132350884", "Popular among students with similar reading patterns"),
]


def seed_sample_data(library) -> None:
    """Populate an empty library. Existing rows are left alone."""
    users = {}
    for entry in USERS:
        users[entry["username"]] = library.find_user(entry["username"]) or library.create_user(**entry)
    admin, faculty, student = users["admin"], users["faculty"], users["student"]

    books = {}
    for entry in BOOKS:
        book = library.add_book(faculty, Book(**entry))
        books[entry["isbn"]] = book

    courses = {}
    for entry in COURSES:
        courses[entry["code"]] = library.create_course(admin, **entry)

    for code, isbn, priority, required in READING_LISTS:
        library.add_course_book(faculty, courses[code].id, books[isbn].id, priority=priority, is_required=required)

    for entry in PAPERS:
        library.add_research_paper(faculty, **entry)

    for isbn, reason in RECOMMENDATIONS:
        library.recommend(student.id, books[isbn].id, reason)

    logger.info("Seeded %d users, %d books, %d courses, %d papers",
                len(users), len(books), len(courses), len(PAPERS))
