import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation import CirculationCoordinator, create_coordinator
from circulation.errors import (
    CirculationError,
    ConcurrencyConflict,
    ConsistencyError,
    NotFoundError,
    PreconditionError,
)
from circulation.loan import Loan
from circulation.reservation import Reservation
from config import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_coordinator: Optional[CirculationCoordinator] = None


def get_coordinator() -> CirculationCoordinator:
    """Dependency returning the process-wide coordinator, created on first use."""
    global _coordinator
    if _coordinator is None:
        _coordinator = create_coordinator(
            settings.database_file,
            busy_timeout=settings.db_busy_timeout,
            retry_attempts=settings.db_retry_attempts,
            retry_backoff=settings.db_retry_backoff,
            allow_duplicate_reservations=settings.allow_duplicate_reservations,
        )
    return _coordinator


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency guarding admin-only endpoints."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
def _status_for(exc: CirculationError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PreconditionError):
        return 400
    if isinstance(exc, ConcurrencyConflict):
        return 409
    return 500


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    status = _status_for(exc)
    if isinstance(exc, ConsistencyError):
        logger.error(f"{request.method} {request.url.path} failed on inconsistent state: {exc.message}")
    return JSONResponse(status_code=status, content=exc.to_dict())


# --- Models ---
class BookModel(BaseModel):
    book_id: int
    title: str
    author: str
    total_copies: int
    available_copies: int
    created_at: str | None = None


class BookInventoryModel(BookModel):
    copy_rows: int
    free_copies: int
    consistent: bool


class BookCreateModel(BaseModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    copies: int = Field(default=1, ge=1, description="Number of physical copies")


class CopiesModel(BaseModel):
    count: int = Field(..., ge=1)


class CheckoutRequest(BaseModel):
    book_id: int
    user_id: int


class ReserveRequest(BaseModel):
    book_id: int
    user_id: int


class LoanModel(BaseModel):
    loan_id: int
    copy_id: int
    book_id: int | None = None
    user_id: int
    loan_date: str
    due_date: str
    return_date: str | None = None
    status: str
    is_overdue: bool
    days_remaining: int | None = None


class ReservationModel(BaseModel):
    reservation_id: int
    user_id: int
    book_id: int
    reservation_date: str
    position: int | None = None
    status: str


class ReturnModel(BaseModel):
    message: str = "Book returned successfully"
    loan: LoanModel
    notification: str | None = None
    reservation: ReservationModel | None = None


class CopyModel(BaseModel):
    copy_id: int
    book_id: int
    status: str
    created_at: str | None = None


class AvailabilityModel(BaseModel):
    copy_id: int
    available: bool


class DashboardStatsModel(BaseModel):
    total_books: int
    active_loans: int
    overdue_loans: int
    total_returned: int
    pending_reservations: int
    ready_reservations: int


class DiscrepancyModel(BaseModel):
    book_id: int
    title: str
    total_copies: int
    available_copies: int
    copy_rows: int
    free_copies: int
    mislabeled_copies: int
    problems: str


# --- Helpers ---
def _loan_model(loan: Loan, coordinator: CirculationCoordinator) -> LoanModel:
    now = coordinator.clock()
    return LoanModel(
        **loan.to_dict(),
        is_overdue=loan.is_overdue(now),
        days_remaining=loan.days_remaining(now),
    )


def _reservation_model(reservation: Reservation) -> ReservationModel:
    return ReservationModel(**reservation.to_dict())


# --- Health ---
@app.get("/health")
def health(coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": coordinator.db.ping(),
        "version": settings.app_version,
        "environment": settings.environment,
    }


# --- Catalog ---
@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_book(payload: BookCreateModel, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    book = coordinator.add_book(payload.title, payload.author, payload.copies)
    return BookModel(**book.to_dict())


@app.get("/books", response_model=List[BookInventoryModel])
def list_books(coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [BookInventoryModel(**item.to_dict()) for item in coordinator.list_books()]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return BookModel(**coordinator.get_book(book_id).to_dict())


@app.post("/books/{book_id}/copies", response_model=BookModel, dependencies=[Depends(get_api_key)])
def add_copies(book_id: int, payload: CopiesModel, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return BookModel(**coordinator.add_copies(book_id, payload.count).to_dict())


@app.delete("/books/{book_id}/copies", response_model=BookModel, dependencies=[Depends(get_api_key)])
def remove_copies(book_id: int, count: int = Query(1, ge=1),
                  coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return BookModel(**coordinator.remove_copies(book_id, count).to_dict())


@app.get("/books/{book_id}/queue", response_model=List[ReservationModel])
def get_queue(book_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [_reservation_model(r) for r in coordinator.get_queue(book_id)]


@app.get("/books/{book_id}/copies", response_model=List[CopyModel])
def list_copies(book_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [CopyModel(**copy.to_dict()) for copy in coordinator.list_copies(book_id)]


@app.get("/copies/{copy_id}/availability", response_model=AvailabilityModel)
def copy_availability(copy_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return AvailabilityModel(copy_id=copy_id, available=coordinator.is_copy_available(copy_id))


# --- Loans ---
@app.post("/loans/checkout", response_model=LoanModel, status_code=201)
def checkout(payload: CheckoutRequest, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    loan = coordinator.checkout(payload.book_id, payload.user_id)
    return _loan_model(loan, coordinator)


@app.put("/loans/{loan_id}/return", response_model=ReturnModel)
def return_loan(loan_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    result = coordinator.return_copy(loan_id)
    return ReturnModel(
        loan=_loan_model(result.loan, coordinator),
        notification=result.notification,
        reservation=_reservation_model(result.reservation) if result.reservation else None,
    )


# Declared before /loans/{loan_id} so "active" and "overdue" are not parsed as ids.
@app.get("/loans/active", response_model=List[LoanModel])
def active_loans(coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [_loan_model(loan, coordinator) for loan in coordinator.list_active_loans()]


@app.get("/loans/overdue", response_model=List[LoanModel])
def overdue_loans(coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [_loan_model(loan, coordinator) for loan in coordinator.list_overdue_loans()]


@app.get("/loans/user/{user_id}", response_model=List[LoanModel])
def user_loans(user_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [_loan_model(loan, coordinator) for loan in coordinator.list_user_loans(user_id)]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return _loan_model(coordinator.get_loan(loan_id), coordinator)


# --- Reservations ---
@app.post("/reservations", response_model=ReservationModel, status_code=201)
def reserve(payload: ReserveRequest, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return _reservation_model(coordinator.reserve(payload.book_id, payload.user_id))


@app.get("/reservations/active", response_model=List[ReservationModel])
def active_reservations(coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [_reservation_model(r) for r in coordinator.list_active_reservations()]


@app.get("/reservations/user/{user_id}", response_model=List[ReservationModel])
def user_reservations(user_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [_reservation_model(r) for r in coordinator.list_user_reservations(user_id)]


@app.post("/reservations/{reservation_id}/cancel")
def cancel_reservation(reservation_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    reservation = coordinator.cancel_reservation(reservation_id)
    return {
        "message": "Reservation cancelled successfully",
        "reservation": _reservation_model(reservation).model_dump(),
    }


@app.post("/reservations/{reservation_id}/fulfill", response_model=LoanModel,
          dependencies=[Depends(get_api_key)])
def fulfill_reservation(reservation_id: int, coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return _loan_model(coordinator.fulfill_reservation(reservation_id), coordinator)


# --- Admin ---
@app.get("/admin/dashboard-stats", response_model=DashboardStatsModel)
def dashboard_stats(coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return DashboardStatsModel(**coordinator.dashboard_stats())


@app.get("/admin/inventory-audit", response_model=List[DiscrepancyModel], dependencies=[Depends(get_api_key)])
def inventory_audit(coordinator: CirculationCoordinator = Depends(get_coordinator)):
    return [DiscrepancyModel(**item.to_dict()) for item in coordinator.audit_inventory()]
