"""DB tables and the import job repository.

Every status change goes through ``ImportJobRepository.transition``, a single ``UPDATE ... WHERE id = ? AND
status = ?`` so two workers can never both advance the same job.
"""

import json
import uuid
from typing import Any

from sqlalchemy import Boolean, Column, Date, Float, ForeignKey, Integer, String, Text, create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import InvalidTransitionError, JobNotFoundError, StaleJobError
from app.core.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ConfirmResult,
    ExtractionResult,
    ImportJob,
    ImportJobStatus,
)
from app.core.utils import get_logger, utcnow_iso

Base = declarative_base()

logger = get_logger("statement-import.db")

STOP_STATUSES = frozenset({ImportJobStatus.FAILED, ImportJobStatus.CANCELLED})


class ImportJobRow(Base):
    """Persisted import job."""

    __tablename__ = "import_jobs"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    file_key = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, index=True)
    progress = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)
    bank_format = Column(String, nullable=True)
    result = Column(Text, nullable=True)
    stage_data = Column(Text, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=True)
    completed_at = Column(String, nullable=True)


class FinancialAccount(Base):
    """A permanent account created from a confirmed import."""

    __tablename__ = "financial_accounts"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    import_job_id = Column(String, ForeignKey("import_jobs.id"), nullable=True)
    name = Column(String, nullable=False)
    bank_name = Column(String, nullable=True)
    account_number = Column(String, nullable=True)
    account_type = Column(String, nullable=False)
    currency = Column(String, nullable=False, default="COP")
    color = Column(String, nullable=True)
    icon = Column(String, nullable=True)
    initial_balance = Column(Float, nullable=False, default=0.0)
    current_balance = Column(Float, nullable=False, default=0.0)
    created_at = Column(String, nullable=False)


class TransactionRow(Base):
    """A permanent transaction created from a confirmed import."""

    __tablename__ = "transactions"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    account_id = Column(String, ForeignKey("financial_accounts.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    description = Column(Text, nullable=False)
    amount = Column(Float, nullable=False)
    type = Column(String, nullable=False)
    merchant = Column(String, nullable=True)
    category = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class Category(Base):
    """A category for a payee, learned from confirmed imports."""

    __tablename__ = "categories"
    id = Column(Integer, primary_key=True)
    payee = Column(String, unique=True, index=True)
    category = Column(String)


def create_db_engine(url: str) -> Engine:
    """Create a SQLAlchemy engine; SQLite connections are shared across worker threads."""
    if not url.startswith("sqlite"):
        return create_engine(url)
    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def init_db(engine: Engine) -> None:
    """Create all tables if they do not exist."""
    Base.metadata.create_all(engine)


def _to_model(row: ImportJobRow) -> ImportJob:
    return ImportJob(
        id=row.id,
        user_id=row.user_id,
        file_key=row.file_key,
        file_name=row.file_name,
        mime_type=row.mime_type,
        file_size=row.file_size or 0,
        status=ImportJobStatus(row.status),
        progress=row.progress,
        error=row.error,
        error_code=row.error_code,
        bank_format=row.bank_format,
        result=ExtractionResult.model_validate_json(row.result) if row.result else None,
        cancel_requested=bool(row.cancel_requested),
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


class ImportJobRepository:
    """Persistence for import jobs with compare-and-set status transitions."""

    def __init__(self, engine: Engine) -> None:
        """Initialize the repository with a SQLAlchemy engine."""
        self.engine = engine
        self.Session = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    def create(
        self,
        job_id: str,
        user_id: str,
        file_key: str,
        file_name: str,
        mime_type: str,
        file_size: int = 0,
    ) -> ImportJob:
        """Insert a new job in PENDING."""
        now = utcnow_iso()
        row = ImportJobRow(
            id=job_id,
            user_id=user_id,
            file_key=file_key,
            file_name=file_name,
            mime_type=mime_type,
            file_size=file_size,
            status=ImportJobStatus.PENDING.value,
            progress=0,
            cancel_requested=False,
            created_at=now,
            updated_at=now,
        )
        with self.Session() as session:
            session.add(row)
            session.commit()
            return _to_model(row)

    def get(self, job_id: str) -> ImportJob | None:
        """Return the job, or None if it does not exist."""
        with self.Session() as session:
            row = session.get(ImportJobRow, job_id)
            return _to_model(row) if row else None

    def get_stage_data(self, job_id: str) -> dict[str, Any]:
        """Return the intermediate payload left by the previous stage."""
        with self.Session() as session:
            raw = session.execute(select(ImportJobRow.stage_data).where(ImportJobRow.id == job_id)).scalar()
        return json.loads(raw) if raw else {}

    def transition(
        self,
        job_id: str,
        expected: ImportJobStatus,
        new_status: ImportJobStatus,
        *,
        progress: int | None = None,
        stage_data: dict[str, Any] | None = None,
        result: ExtractionResult | None = None,
        **fields: Any,
    ) -> ImportJob:
        """Atomically move a job from ``expected`` to ``new_status``.

        Raises ``InvalidTransitionError`` for edges the state machine does not have and ``StaleJobError`` when
        the persisted status is no longer ``expected``. Progress is never lowered. A forward move of a job flagged
        for cancellation lands in CANCELLED instead; FAILED and CANCELLED jobs lose any stage data and result.
        """
        if new_status not in ALLOWED_TRANSITIONS.get(expected, frozenset()):
            msg = f"Cannot move job {job_id} from {expected.value} to {new_status.value}"
            raise InvalidTransitionError(msg)
        now = utcnow_iso()
        values: dict[str, Any] = {"status": new_status.value, "updated_at": now, **fields}
        forward = new_status not in STOP_STATUSES
        if new_status in TERMINAL_STATUSES:
            values["stage_data"] = None
            values["completed_at"] = now
            if not forward:
                values["result"] = None
        elif stage_data is not None:
            values["stage_data"] = json.dumps(stage_data)
        if result is not None and forward:
            values["result"] = result.model_dump_json()
        conditions = [ImportJobRow.id == job_id, ImportJobRow.status == expected.value]
        if forward:
            conditions.append(ImportJobRow.cancel_requested.is_(False))
        with self.Session() as session:
            current = session.execute(select(ImportJobRow.progress).where(ImportJobRow.id == job_id)).scalar()
            if current is None:
                msg = f"Import job {job_id} not found"
                raise JobNotFoundError(msg)
            if progress is not None:
                values["progress"] = max(current, progress)
            stmt = update(ImportJobRow).where(*conditions).values(**values)
            updated = session.execute(stmt).rowcount
            if updated != 1:
                session.rollback()
                flagged = forward and session.execute(
                    select(ImportJobRow.id).where(
                        ImportJobRow.id == job_id,
                        ImportJobRow.status == expected.value,
                        ImportJobRow.cancel_requested.is_(True),
                    )
                ).scalar() is not None
                if flagged:
                    session.close()
                    logger.info(f"Job {job_id}: cancel requested, not moving to {new_status.value}")
                    return self.transition(job_id, expected, ImportJobStatus.CANCELLED)
                msg = f"Import job {job_id} is no longer {expected.value}"
                raise StaleJobError(msg)
            session.commit()
        progress_now = values.get("progress", current)
        logger.info(f"Job {job_id}: {expected.value} -> {new_status.value} (progress={progress_now})")
        job = self.get(job_id)
        if job is None:
            msg = f"Import job {job_id} not found"
            raise JobNotFoundError(msg)
        return job

    def request_cancel(self, job_id: str) -> ImportJob:
        """Flag a non-terminal job for cancellation at its next stage boundary."""
        terminal = [status.value for status in TERMINAL_STATUSES]
        with self.Session() as session:
            stmt = (
                update(ImportJobRow)
                .where(ImportJobRow.id == job_id, ImportJobRow.status.not_in(terminal))
                .values(cancel_requested=True, updated_at=utcnow_iso())
            )
            session.execute(stmt)
            session.commit()
        job = self.get(job_id)
        if job is None:
            msg = f"Import job {job_id} not found"
            raise JobNotFoundError(msg)
        return job

    def lookup_category(self, payee: str) -> str | None:
        """Look up a category for a payee (case-insensitive, partial match)."""
        with self.Session() as session:
            category_obj = session.query(Category).filter(Category.payee.ilike(f"%{payee.upper()}%")).first()
            return category_obj.category.upper() if category_obj else None

    def confirm(self, job_id: str) -> ConfirmResult:
        """Write the job's accounts and transactions as permanent rows and move it to CONFIRMED.

        All rows and the status change are committed in one database transaction.
        """
        job = self.get(job_id)
        if job is None:
            msg = f"Import job {job_id} not found"
            raise JobNotFoundError(msg)
        if job.status != ImportJobStatus.REVIEW or job.result is None:
            msg = f"Cannot confirm import in {job.status.value} status. Must be in REVIEW status."
            raise InvalidTransitionError(msg)
        if job.cancel_requested:
            msg = f"Cannot confirm import {job_id}: it was cancelled."
            raise InvalidTransitionError(msg)
        result = job.result
        now = utcnow_iso()
        with self.Session() as session:
            account_ids = []
            for account in result.accounts:
                account_id = str(uuid.uuid4())
                session.add(
                    FinancialAccount(
                        id=account_id,
                        user_id=job.user_id,
                        import_job_id=job.id,
                        name=account.name,
                        bank_name=account.bank_name,
                        account_number=account.account_number_last4,
                        account_type=account.account_type.value,
                        currency=account.currency,
                        color=account.suggested_color,
                        icon=account.suggested_icon,
                        initial_balance=account.initial_balance,
                        current_balance=account.initial_balance,
                        created_at=now,
                    )
                )
                account_ids.append(account_id)
            transactions_created = 0
            if account_ids:
                # One statement covers one account; transactions belong to the first one.
                for txn in result.transactions:
                    session.add(
                        TransactionRow(
                            id=str(uuid.uuid4()),
                            user_id=job.user_id,
                            account_id=account_ids[0],
                            date=txn.date,
                            description=txn.description,
                            amount=txn.amount,
                            type=txn.type.value,
                            merchant=txn.merchant,
                            category=txn.category,
                            created_at=now,
                        )
                    )
                    transactions_created += 1
                    self._remember_category(session, txn.merchant, txn.category)
            stmt = (
                update(ImportJobRow)
                .where(
                    ImportJobRow.id == job_id,
                    ImportJobRow.status == ImportJobStatus.REVIEW.value,
                    ImportJobRow.cancel_requested.is_(False),
                )
                .values(status=ImportJobStatus.CONFIRMED.value, updated_at=now, completed_at=now)
            )
            if session.execute(stmt).rowcount != 1:
                session.rollback()
                msg = f"Import job {job_id} is no longer in REVIEW"
                raise StaleJobError(msg)
            session.commit()
        logger.info(
            f"Job {job_id}: REVIEW -> CONFIRMED ({len(account_ids)} accounts, {transactions_created} transactions)"
        )
        return ConfirmResult(accounts_created=len(account_ids), transactions_created=transactions_created)

    def _remember_category(self, session: Session, payee: str | None, category: str | None) -> None:
        """Add a payee-category pair if the payee is not known yet."""
        if not payee or not category:
            return
        payee_upper = payee.upper()
        session.flush()
        exists = session.query(Category).filter(Category.payee == payee_upper).first()
        if not exists:
            session.add(Category(payee=payee_upper, category=category.upper()))
