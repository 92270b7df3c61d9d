"""
SQLAlchemy-backed store for payment intents and their event log.

Single-writer semantics: every operation runs under one store-wide lock.
There is no coordination between processes.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, event, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..exceptions import DuplicateIntentError, StoreError
from ..models import IntentEvent, PaymentIntent, PaymentStatus, StoredIntent, VerificationMeta
from ..state import OPEN_STATUSES, can_transition, is_terminal
from .models import Base, EventRecord, IntentRecord, utcnow

logger = logging.getLogger(__name__)

EVENT_INTENT_CREATED = "INTENT_CREATED"
EVENT_INTENT_VERIFIED = "INTENT_VERIFIED"
EVENT_INTENT_VERIFY_ERROR = "INTENT_VERIFY_ERROR"

DEFAULT_DATABASE_URL = "sqlite:///payintent-verifier.sqlite"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _create_engine(database_url: str, echo: bool = False) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True, pool_recycle=3600)

    kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url:
        # One shared connection, otherwise every connection sees its own empty database
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


class IntentStore:
    """Durable keyed storage of intents plus an append-only event log."""

    def __init__(
        self,
        database_url: str = DEFAULT_DATABASE_URL,
        engine: Optional[Engine] = None,
        echo: bool = False
    ):
        """
        Initialize the store and create tables if they are missing

        Args:
            database_url: SQLAlchemy database URL
            engine: Prebuilt engine (database_url is ignored)
            echo: Log SQL statements
        """
        self.engine = engine or _create_engine(database_url, echo=echo)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        self._lock = threading.RLock()
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self, operation: str = "unknown") -> Iterator[Session]:
        """Session that commits on success and rolls back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.error(f"DB integrity error during {operation}: {e}")
            raise StoreError("Integrity constraint violated", operation)
        except OperationalError as e:
            session.rollback()
            logger.error(f"DB operational error during {operation}: {e}")
            raise StoreError("Connection or operational error", operation)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"SQLAlchemy error during {operation}: {e}")
            raise StoreError("Database operation failed", operation)
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def create_intent(self, intent: PaymentIntent) -> None:
        """
        Insert a new intent and its creation event.

        Raises:
            DuplicateIntentError: If an intent with the same id exists
        """
        with self._lock, self.session("create_intent") as db:
            if db.get(IntentRecord, intent.id) is not None:
                raise DuplicateIntentError(f"intent {intent.id} already exists", "create_intent")
            now = utcnow()
            db.add(IntentRecord(
                id=intent.id,
                json=intent.model_dump_json(by_alias=True),
                status=intent.status.value,
                reference=intent.reference,
                created_at=now,
                updated_at=now,
            ))
            db.flush()
            db.add(EventRecord(
                intent_id=intent.id,
                type=EVENT_INTENT_CREATED,
                payload={"status": intent.status.value},
                created_at=now,
            ))
        logger.debug(f"Stored intent {intent.id}")

    def get_intent(self, intent_id: str) -> Optional[StoredIntent]:
        with self._lock, self.session("get_intent") as db:
            record = db.get(IntentRecord, intent_id)
            if record is None:
                return None
            return self._to_stored(record)

    def list_pending_intents(self) -> List[PaymentIntent]:
        """Intents that can still change status (PENDING or DETECTED), oldest first."""
        statuses = [status.value for status in OPEN_STATUSES]
        with self._lock, self.session("list_pending_intents") as db:
            records = db.scalars(
                select(IntentRecord)
                .where(IntentRecord.status.in_(statuses))
                .order_by(IntentRecord.created_at, IntentRecord.id)
            ).all()
            return [PaymentIntent.model_validate_json(record.json) for record in records]

    def find_by_reference(self, reference: str) -> Optional[PaymentIntent]:
        with self._lock, self.session("find_by_reference") as db:
            record = db.scalars(
                select(IntentRecord).where(IntentRecord.reference == reference).limit(1)
            ).first()
            if record is None:
                return None
            return PaymentIntent.model_validate_json(record.json)

    def update_intent_status(
        self,
        intent_id: str,
        status: PaymentStatus,
        meta: Optional[VerificationMeta] = None
    ) -> bool:
        """
        Move an intent to `status` and merge verification metadata.

        Returns False without writing anything when the id is unknown, the
        intent is already terminal, the transition is illegal, or status,
        txHash and confirmations are all unchanged. `lastCheckedAt` is a
        heartbeat: it is refreshed for open intents even when nothing else
        changes, and never counts as a change on its own.

        Returns:
            True if status or verification metadata changed
        """
        status = PaymentStatus(status)
        meta = meta or VerificationMeta()

        with self._lock, self.session("update_intent_status") as db:
            record = db.get(IntentRecord, intent_id)
            if record is None:
                return False

            current = PaymentStatus(record.status)
            if is_terminal(current):
                return False

            tx_hash = meta.tx_hash if meta.tx_hash is not None else record.tx_hash
            confirmations = meta.confirmations if meta.confirmations is not None else record.confirmations

            if current == status:
                changed = tx_hash != record.tx_hash or confirmations != record.confirmations
            elif can_transition(current, status):
                changed = True
            else:
                return False

            if meta.last_checked_at is not None:
                record.last_checked_at = meta.last_checked_at
            if not changed:
                return False

            intent = PaymentIntent.model_validate_json(record.json)
            record.json = intent.model_copy(update={"status": status}).model_dump_json(by_alias=True)
            record.status = status.value
            record.tx_hash = tx_hash
            record.confirmations = confirmations
            record.updated_at = utcnow()

        logger.debug(f"Intent {intent_id} {current.value} -> {status.value}")
        return True

    def status_counts(self) -> Dict[PaymentStatus, int]:
        counts = {status: 0 for status in PaymentStatus}
        with self._lock, self.session("status_counts") as db:
            rows = db.execute(
                select(IntentRecord.status, func.count()).group_by(IntentRecord.status)
            ).all()
        for status, count in rows:
            counts[PaymentStatus(status)] = count
        return counts

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_event(self, intent_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        """Append an audit event. `payload` must be JSON-serializable."""
        with self._lock, self.session("add_event") as db:
            db.add(EventRecord(
                intent_id=intent_id,
                type=event_type,
                payload=payload,
                created_at=utcnow(),
            ))

    def list_events(self, intent_id: str) -> List[IntentEvent]:
        with self._lock, self.session("list_events") as db:
            records = db.scalars(
                select(EventRecord)
                .where(EventRecord.intent_id == intent_id)
                .order_by(EventRecord.id)
            ).all()
            return [
                IntentEvent(
                    id=record.id,
                    intent_id=record.intent_id,
                    type=record.type,
                    payload=record.payload,
                    created_at=_as_utc(record.created_at),
                )
                for record in records
            ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Check database connectivity."""
        try:
            with self._lock, self.session("ping") as db:
                return db.execute(text("SELECT 1")).scalar() == 1
        except Exception as e:
            logger.error(f"DB health check failed: {e}")
            return False

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _to_stored(record: IntentRecord) -> StoredIntent:
        return StoredIntent(
            id=record.id,
            intent=PaymentIntent.model_validate_json(record.json),
            status=PaymentStatus(record.status),
            tx_hash=record.tx_hash,
            confirmations=record.confirmations,
            last_checked_at=_as_utc(record.last_checked_at),
        )
