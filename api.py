import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from book import Book
from config import settings, setup_logging
from errors import LibraryError, NotFoundError
from lending import LendingRecord
from library import Library
from member import Member, identifier_from
from queries import paginate

logger = logging.getLogger(__name__)

_library: Optional[Library] = None


def get_library() -> Library:
    """Process-wide Library instance, created on first use."""
    global _library
    if _library is None:
        _library = Library()
    return _library


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"{settings.app_name} {settings.app_version} starting")
    yield
    logger.info(f"{settings.app_name} shutting down")


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency validating the API key on mutating routes."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_actor(x_performed_by: Optional[str] = Header(None)) -> str:
    """Staff member recorded in the audit trail for this request."""
    return (x_performed_by or "").strip() or "api"


# --- Models ---
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookModel(CamelModel):
    id: int = Field(alias="_id")
    title: str
    author: str
    isbn: str
    genre: Optional[str] = None
    description: Optional[str] = None
    published_date: Optional[str] = None
    copies_available: int
    is_deleted: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_book(cls, book: Book) -> "BookModel":
        return cls(**book.to_dict())


class BookCreateModel(CamelModel):
    isbn: str
    title: str
    author: str
    genre: Optional[str] = None
    description: Optional[str] = None
    published_date: Optional[str] = None
    copies_available: int = Field(default=1, ge=0)


class BookUpdateModel(CamelModel):
    title: Optional[str] = None
    author: Optional[str] = None
    genre: Optional[str] = None
    description: Optional[str] = None
    published_date: Optional[str] = None
    copies_available: Optional[int] = Field(default=None, ge=0)


class ReaderModel(CamelModel):
    id: int = Field(alias="_id")
    member_id: Optional[str] = None
    full_name: str
    nic: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_member(cls, member: Member) -> "ReaderModel":
        return cls(**member.to_dict())


class ReaderCreateModel(CamelModel):
    full_name: str
    nic: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None


class ReaderUpdateModel(CamelModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None


class LendRequest(CamelModel):
    member_id: Optional[str] = None
    nic: Optional[str] = None
    isbn: Optional[str] = None
    notes: Optional[str] = None


class LendingBookModel(CamelModel):
    id: int = Field(alias="_id")
    title: str
    isbn: str
    author: str


class LendingReaderModel(CamelModel):
    id: int = Field(alias="_id")
    full_name: str
    member_id: Optional[str] = None
    nic: str
    email: str


class LendingModel(CamelModel):
    id: int = Field(alias="_id")
    reader_id: LendingReaderModel
    book_id: LendingBookModel
    lend_date: str
    due_date: str
    return_date: Optional[str] = None
    is_returned: bool
    is_overdue: bool
    status: str
    days_overdue: int
    fine_amount: Optional[float] = None
    lent_by: Optional[str] = None
    returned_by: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_record(cls, record: LendingRecord, now: datetime) -> "LendingModel":
        data = record.to_dict(now)
        data["reader_id"] = LendingReaderModel(**data.pop("member"))
        data["book_id"] = LendingBookModel(**data.pop("book"))
        return cls(**data)


class OverdueResponse(BaseModel):
    overdue: List[LendingModel]


class OverdueNoticeItemModel(CamelModel):
    lending_id: int
    title: str
    isbn: str
    due_date: str
    days_overdue: int
    fine_to_date: float


class OverdueNoticeModel(CamelModel):
    member: LendingReaderModel
    items: List[OverdueNoticeItemModel]


class OverdueNoticesResponse(BaseModel):
    message: str
    count: int
    notices: List[OverdueNoticeModel]


class PaginatedLendingResponse(BaseModel):
    items: List[LendingModel]
    total: int
    page: int
    page_size: int
    total_pages: int


class AuditLogModel(CamelModel):
    id: int = Field(alias="_id")
    action: str
    performed_by: str
    entity_type: str
    entity_id: str
    timestamp: str
    details: Optional[str] = None


class StatsModel(CamelModel):
    total_books: int
    total_copies_available: int
    total_readers: int
    active_lendings: int
    overdue_lendings: int
    returned_overdue: int
    total_fines: float


def _lendings_out(library: Library, records: List[LendingRecord]) -> List[LendingModel]:
    now = library.lending.clock()
    return [LendingModel.from_record(r, now) for r in records]


# --- Health check ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health endpoint for container checks."""
    return {
        "status": "healthy",
        "timestamp": library.lending.clock().isoformat(),
        "total_books": len(library.list_books()),
    }


@app.get("/dash/all", response_model=StatsModel)
def dashboard_summary(library: Library = Depends(get_library)):
    """Totals shown on the staff dashboard."""
    return StatsModel(**library.get_statistics())


# --- Catalog ---
@app.get("/books", response_model=List[BookModel])
def get_books(q: Optional[str] = Query(None, description="Search title, author, ISBN or genre"),
              genre: Optional[str] = Query(None),
              library: Library = Depends(get_library)):
    books = library.search_books(q) if q else library.list_books()
    if genre:
        books = [b for b in books if (b.genre or "").lower() == genre.lower()]
    return [BookModel.from_book(b) for b in books]


@app.get("/books/genres/list", response_model=List[str])
def get_genres(library: Library = Depends(get_library)):
    return library.list_genres()


@app.get("/books/{isbn}", response_model=BookModel)
def get_book(isbn: str, library: Library = Depends(get_library)):
    book = library.find_book(isbn)
    if not book:
        raise NotFoundError("Book not found.")
    return BookModel.from_book(book)


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel, actor: str = Depends(get_actor),
             library: Library = Depends(get_library)):
    book = Book(**payload.model_dump())
    return BookModel.from_book(library.add_book(book, performed_by=actor))


@app.put("/books/{isbn}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(isbn: str, update: BookUpdateModel, actor: str = Depends(get_actor),
                library: Library = Depends(get_library)):
    book = library.update_book(isbn, performed_by=actor, **update.model_dump(exclude_none=True))
    if not book:
        raise NotFoundError("Book not found.")
    return BookModel.from_book(book)


@app.delete("/books/{isbn}", dependencies=[Depends(get_api_key)])
def delete_book(isbn: str, actor: str = Depends(get_actor), library: Library = Depends(get_library)):
    if not library.remove_book(isbn, performed_by=actor):
        raise NotFoundError("Book not found.")
    return {"message": "Book removed."}


# --- Readers ---
@app.get("/reader/all", response_model=List[ReaderModel])
def get_readers(q: Optional[str] = Query(None), library: Library = Depends(get_library)):
    members = library.search_members(q) if q else library.list_members()
    return [ReaderModel.from_member(m) for m in members]


@app.post("/reader/add", response_model=ReaderModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_reader(payload: ReaderCreateModel, actor: str = Depends(get_actor),
               library: Library = Depends(get_library)):
    member = library.add_member(Member(**payload.model_dump()), performed_by=actor)
    return ReaderModel.from_member(member)


@app.get("/reader/{member_id}", response_model=ReaderModel)
def get_reader(member_id: str, library: Library = Depends(get_library)):
    member = library.find_member(identifier_from(member_id=member_id))
    if not member:
        raise NotFoundError("Reader not found.")
    return ReaderModel.from_member(member)


@app.put("/reader/{member_id}", response_model=ReaderModel, dependencies=[Depends(get_api_key)])
def update_reader(member_id: str, update: ReaderUpdateModel, actor: str = Depends(get_actor),
                  library: Library = Depends(get_library)):
    member = library.update_member(member_id, performed_by=actor, **update.model_dump(exclude_none=True))
    if not member:
        raise NotFoundError("Reader not found.")
    return ReaderModel.from_member(member)


@app.delete("/reader/{member_id}", dependencies=[Depends(get_api_key)])
def delete_reader(member_id: str, actor: str = Depends(get_actor), library: Library = Depends(get_library)):
    if not library.remove_member(member_id, performed_by=actor):
        raise NotFoundError("Reader not found.")
    return {"message": "Reader removed."}


# --- Lending ---
@app.post("/lending/lend", response_model=LendingModel, status_code=201, dependencies=[Depends(get_api_key)])
def lend_book(payload: LendRequest, actor: str = Depends(get_actor), library: Library = Depends(get_library)):
    """Lend one copy to the reader given by memberId or nic (memberId wins when both are sent)."""
    record = library.lend_book(payload.isbn or "", member_id=payload.member_id, nic=payload.nic,
                               performed_by=actor, notes=payload.notes)
    return _lendings_out(library, [record])[0]


@app.api_route("/lending/return/{lending_id}", methods=["POST", "PUT"], response_model=LendingModel,
               dependencies=[Depends(get_api_key)])
def return_book(lending_id: str, actor: str = Depends(get_actor), library: Library = Depends(get_library)):
    record = library.return_book(lending_id, performed_by=actor)
    return _lendings_out(library, [record])[0]


@app.get("/lending", response_model=List[LendingModel])
@app.get("/lending/all", response_model=List[LendingModel], include_in_schema=False)
def get_lendings(
    response: Response,
    q: Optional[str] = Query(None, description="Search reader name, member ID, book title or ISBN"),
    status: str = Query("all", description="all | active | overdue | returned"),
    sort_by: str = Query("lend_date", description="lend_date | due_date | return_date | member | title | fine_amount"),
    order: str = Query("desc", description="asc | desc"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    library: Library = Depends(get_library),
):
    records = library.lending.list_lendings(search=q, status_filter=status, sort_by=sort_by, order=order)
    response.headers["X-Total-Count"] = str(len(records))
    return _lendings_out(library, records[offset:offset + limit])


@app.get("/lending/paginated", response_model=PaginatedLendingResponse)
def get_lendings_paginated(
    q: Optional[str] = Query(None),
    status: str = Query("all"),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    library: Library = Depends(get_library),
):
    records = library.lending.list_lendings(search=q, status_filter=status)
    items, meta = paginate(records, page, page_size)
    return PaginatedLendingResponse(items=_lendings_out(library, items), **meta)


@app.get("/lending/overdue", response_model=OverdueResponse)
def get_overdue(library: Library = Depends(get_library)):
    return OverdueResponse(overdue=_lendings_out(library, library.lending.list_overdue()))


@app.post("/lending/notify-overdues", response_model=OverdueNoticesResponse, dependencies=[Depends(get_api_key)])
def notify_overdues(actor: str = Depends(get_actor), library: Library = Depends(get_library)):
    """Prepare one overdue notice per reader. Delivery is left to the caller."""
    notices = library.lending.overdue_notices(performed_by=actor)
    return OverdueNoticesResponse(
        message=f"Prepared overdue notices for {len(notices)} readers.",
        count=len(notices),
        notices=[OverdueNoticeModel(**notice) for notice in notices],
    )


@app.get("/lending/overdue-returned", response_model=List[LendingModel])
@app.get("/lending/returned", response_model=List[LendingModel], include_in_schema=False)
def get_returned_overdue(library: Library = Depends(get_library)):
    """Returned records that incurred a fine."""
    return _lendings_out(library, library.lending.list_returned_overdue())


@app.get("/lending/book/{isbn}", response_model=List[LendingModel])
def get_lendings_by_book(isbn: str, library: Library = Depends(get_library)):
    return _lendings_out(library, library.lending.lendings_for_book(isbn))


@app.get("/lending/reader/{member_id}", response_model=List[LendingModel])
def get_lendings_by_reader(member_id: str, library: Library = Depends(get_library)):
    identifier = identifier_from(member_id=member_id)
    return _lendings_out(library, library.lending.lendings_for_member(identifier))


@app.get("/lending/{lending_id}", response_model=LendingModel)
def get_lending(lending_id: str, library: Library = Depends(get_library)):
    return _lendings_out(library, [library.lending.get_lending(lending_id)])[0]


# --- Audit ---
@app.get("/audit/all", response_model=List[AuditLogModel])
def get_audit_logs(action: Optional[str] = Query(None), entity_type: Optional[str] = Query(None),
                   limit: Optional[int] = Query(None, ge=1), library: Library = Depends(get_library)):
    logs = library.list_audit_logs(action=action, entity_type=entity_type, limit=limit)
    return [AuditLogModel(**log.to_dict()) for log in logs]
