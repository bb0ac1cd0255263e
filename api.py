import logging
from datetime import date, datetime, timezone
from threading import RLock
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from backup import backup_filename, dump_backup
from book import Book
from config import settings
from errors import (
    BackupError,
    ConstraintViolation,
    InvalidLoanState,
    LibraryError,
    RollbackFailed,
    RolledBack,
    Unavailable,
)
from library import Library
from student import Student

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_library: Optional[Library] = None
_library_lock = RLock()


def get_library() -> Library:
    """Library shared by all requests, opened on first use."""
    global _library
    with _library_lock:
        if _library is None:
            _library = Library()
    return _library


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Dependency that checks the API key on mutating endpoints."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(
        status_code=403,
        detail="Could not validate credentials",
    )

# --- Error mapping ---
_CONFLICTS = (ConstraintViolation, Unavailable, InvalidLoanState)

@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    body: Dict[str, Any] = {"detail": exc.message, "reason": exc.reason}
    if isinstance(exc, _CONFLICTS):
        status = 409
    elif isinstance(exc, BackupError):
        status = 400
    elif isinstance(exc, RolledBack):
        status = 500
        body["recoverable"] = True
    elif isinstance(exc, RollbackFailed):
        status = 500
        body["recoverable"] = False
    else:
        status = 500
    if isinstance(exc, ConstraintViolation):
        body["field"] = exc.field
    if status == 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content=body)

@app.exception_handler(LookupError)
async def lookup_error_handler(request: Request, exc: LookupError):
    return JSONResponse(status_code=404, content={"detail": str(exc), "reason": "not_found"})

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "reason": "invalid"})

# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str
    total_copies: int
    available_copies: int

    @classmethod
    def from_book(cls, book: Book) -> "BookModel":
        return cls(
            id=book.id,
            title=book.title,
            author=book.author,
            isbn=book.isbn,
            total_copies=book.total_copies,
            available_copies=book.available_copies,
        )

class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str
    total_copies: int = Field(default=1, ge=0)

class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    total_copies: Optional[int] = Field(default=None, ge=0)

class StudentModel(BaseModel):
    id: int
    name: str
    registration_number: str
    class_name: str = ""

    @classmethod
    def from_student(cls, student: Student) -> "StudentModel":
        return cls(
            id=student.id,
            name=student.name,
            registration_number=student.registration_number,
            class_name=student.class_name,
        )

class StudentCreateModel(BaseModel):
    name: str
    registration_number: str
    class_name: str = ""

class StudentUpdateModel(BaseModel):
    name: Optional[str] = None
    registration_number: Optional[str] = None
    class_name: Optional[str] = None

class LoanModel(BaseModel):
    id: int
    book_id: int
    student_id: int
    loan_date: date
    due_date: date
    return_date: Optional[date] = None
    status: str
    book_title: Optional[str] = None
    student_name: Optional[str] = None
    overdue_days: int = 0

class CheckoutModel(BaseModel):
    book_id: int
    student_id: int
    due_date: Optional[date] = None

class ReturnModel(BaseModel):
    return_date: Optional[date] = None

class ImportResultModel(BaseModel):
    state: str
    record_count: int
    version: Optional[str] = None
    export_timestamp: Optional[str] = None

def _loan_model(loan, book_title: Optional[str] = None, student_name: Optional[str] = None,
                overdue_days: int = 0) -> LoanModel:
    return LoanModel(
        id=loan.id,
        book_id=loan.book_id,
        student_id=loan.student_id,
        loan_date=loan.loan_date,
        due_date=loan.due_date,
        return_date=loan.return_date,
        status=loan.status,
        book_title=book_title,
        student_name=student_name,
        overdue_days=overdue_days,
    )

# --- Health check ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health endpoint with a quick database round trip."""
    db_ok = True
    try:
        total_books = library.store.count("books")
    except LibraryError:
        db_ok = False
        total_books = 0
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "db": db_ok,
        "total_books": total_books,
    }

# --- Books ---
@app.get("/books", response_model=List[BookModel])
def list_books(q: Optional[str] = Query(default=None, description="Search title or author"),
               library: Library = Depends(get_library)):
    books = library.search_books(q) if q else library.list_books()
    return [BookModel.from_book(b) for b in books]

@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, library: Library = Depends(get_library)):
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel.from_book(book)

@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    book = library.add_book(Book(payload.title, payload.author, payload.isbn, total_copies=payload.total_copies))
    return BookModel.from_book(book)

@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: int, payload: BookUpdateModel, library: Library = Depends(get_library)):
    book = library.update_book(
        book_id,
        title=payload.title,
        author=payload.author,
        isbn=payload.isbn,
        total_copies=payload.total_copies,
    )
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel.from_book(book)

@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int, library: Library = Depends(get_library)):
    if not library.remove_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    return {"deleted": book_id}

# --- Students ---
@app.get("/students", response_model=List[StudentModel])
def list_students(q: Optional[str] = Query(default=None, description="Search name or registration number"),
                  library: Library = Depends(get_library)):
    students = library.search_students(q) if q else library.list_students()
    return [StudentModel.from_student(s) for s in students]

@app.get("/students/{student_id}", response_model=StudentModel)
def get_student(student_id: int, library: Library = Depends(get_library)):
    student = library.find_student(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return StudentModel.from_student(student)

@app.post("/students", response_model=StudentModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_student(payload: StudentCreateModel, library: Library = Depends(get_library)):
    student = library.add_student(
        Student(name=payload.name, registration_number=payload.registration_number, class_name=payload.class_name)
    )
    return StudentModel.from_student(student)

@app.put("/students/{student_id}", response_model=StudentModel, dependencies=[Depends(get_api_key)])
def update_student(student_id: int, payload: StudentUpdateModel, library: Library = Depends(get_library)):
    student = library.update_student(
        student_id,
        name=payload.name,
        registration_number=payload.registration_number,
        class_name=payload.class_name,
    )
    if student is None:
        raise HTTPException(status_code=404, detail="Student not found.")
    return StudentModel.from_student(student)

@app.delete("/students/{student_id}", dependencies=[Depends(get_api_key)])
def delete_student(student_id: int, library: Library = Depends(get_library)):
    if not library.remove_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    return {"deleted": student_id}

# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
def list_loans(status: Optional[str] = Query(default=None, description="active | returned"),
               library: Library = Depends(get_library)):
    return [
        _loan_model(d.loan, d.book_title, d.student_name, d.overdue_days)
        for d in library.list_loans(status=status)
    ]

@app.get("/loans/overdue", response_model=List[LoanModel])
def list_overdue(library: Library = Depends(get_library)):
    return [
        _loan_model(d.loan, d.book_title, d.student_name, d.overdue_days)
        for d in library.list_overdue()
    ]

@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def checkout(payload: CheckoutModel, library: Library = Depends(get_library)):
    loan = library.checkout(payload.book_id, payload.student_id, due_date=payload.due_date)
    return _loan_model(loan)

@app.post("/loans/{loan_id}/return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def return_loan(loan_id: int, payload: Optional[ReturnModel] = Body(default=None),
                library: Library = Depends(get_library)):
    loan = library.return_loan(loan_id, payload.return_date if payload else None)
    return _loan_model(loan)

# --- Statistics ---
@app.get("/stats")
def stats(library: Library = Depends(get_library)):
    return library.get_statistics()

# --- Backup ---
@app.get("/backup", dependencies=[Depends(get_api_key)])
def export_backup(library: Library = Depends(get_library)):
    """Download a checksummed JSON backup of the whole database."""
    payload = library.export_backup()
    return Response(
        content=dump_backup(payload),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{backup_filename(payload)}"'},
    )

@app.post("/backup", response_model=ImportResultModel, dependencies=[Depends(get_api_key)])
async def import_backup(request: Request, library: Library = Depends(get_library)):
    """Replace ALL data with the backup sent as the raw request body."""
    raw = await request.body()
    outcome = await run_in_threadpool(library.import_backup, raw)
    return ImportResultModel(
        state=outcome.state.value,
        record_count=outcome.record_count,
        version=outcome.version,
        export_timestamp=outcome.export_timestamp,
    )
