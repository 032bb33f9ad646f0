"""
Account, credit ledger and extraction storage using SQLite.

Consistency rules:
- Balance changes are single `credits = credits +/- n` statements, never a
  value read earlier and written back (no lost updates between handlers)
- Debits are conditional on the balance covering them; a CHECK constraint
  backs this up so the balance can never go negative
- A payment's credit increment and its transaction row commit together,
  and the checkout session id is UNIQUE so a payment is credited once

Multi-statement writes run under BEGIN IMMEDIATE, which takes the database
write lock up front; competing writers wait up to the busy timeout.
"""

import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from datafromimage.errors import AccountNotFound, DuplicateEvent
from datafromimage.models.account import (
    Account,
    Extraction,
    ExtractionCreate,
    Review,
    ReviewCreate,
    Transaction,
)

logger = logging.getLogger(__name__)


class AccountDatabase:
    """
    Account and credit ledger storage.

    Uses SQLite (embedded, WAL mode). Every public method is a coroutine so
    the storage layer can be swapped for an async driver without touching
    callers.
    """

    def __init__(
        self,
        db_path: str = "./data/datafromimage.db",
        busy_timeout_seconds: float = 5.0,
        signup_credits: int = 5,
    ):
        """
        Initialize account database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a writer waits for the write lock
            signup_credits: Balance given to accounts created at first sign-in
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds
        self.signup_credits = signup_credits

        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing account database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout_seconds)
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    email TEXT,
                    credits INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (credits >= 0)
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    transaction_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    amount_cents INTEGER,
                    credits INTEGER NOT NULL,
                    checkout_session_id TEXT NOT NULL UNIQUE,
                    payment_reference TEXT,
                    event_id TEXT,
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (account_id) REFERENCES accounts(account_id),
                    CHECK (credits > 0)
                );

                CREATE TABLE IF NOT EXISTS extractions (
                    extraction_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    extracted_text TEXT NOT NULL,
                    requirements TEXT,
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (account_id) REFERENCES accounts(account_id)
                );

                CREATE TABLE IF NOT EXISTS reviews (
                    review_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    stars INTEGER NOT NULL,
                    feedback TEXT,
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (account_id) REFERENCES accounts(account_id),
                    CHECK (stars BETWEEN 1 AND 5)
                );

                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    account_id TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_accounts_email ON accounts(email);
                CREATE INDEX IF NOT EXISTS idx_transactions_account
                    ON transactions(account_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_extractions_account
                    ON extractions(account_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_audit_account ON audit_log(account_id);
                """
            )
            conn.commit()
            logger.info("Account database initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            # isolation_level=None: statements autocommit unless _transaction() opens one
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_seconds,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block under BEGIN IMMEDIATE; commit on success, roll back on any error."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def ensure_account(self, account_id: str, email: str | None = None) -> Account:
        """
        Return the account for an identity, creating it on first sign-in.

        New accounts receive the configured signup credits. An existing
        account's email is refreshed when the identity provider reports a
        different one; its balance is never touched here.
        """
        now = datetime.now(UTC).isoformat()
        normalized_email = email.lower() if email else None

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO accounts (account_id, email, credits, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO NOTHING
                """,
                (account_id, normalized_email, self.signup_credits, now, now),
            )
            if cursor.rowcount > 0:
                self._log_audit(
                    conn,
                    account_id=account_id,
                    action="CREATE",
                    resource_type="account",
                    resource_id=account_id,
                    details=f"signup_credits={self.signup_credits}",
                )
                logger.info(f"Created account: {account_id}")
            elif normalized_email:
                conn.execute(
                    """
                    UPDATE accounts
                    SET email = ?, updated_at = ?
                    WHERE account_id = ? AND (email IS NULL OR email != ?)
                    """,
                    (normalized_email, now, account_id, normalized_email),
                )

        account = await self.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"Account vanished after upsert: {account_id}")
        return account

    async def get_account(self, account_id: str) -> Account | None:
        """Get account by id, or None if not found."""
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM accounts WHERE account_id = ?", (account_id,)
            ).fetchone()

        if not row:
            return None

        return Account(
            account_id=row["account_id"],
            email=row["email"],
            credits=row["credits"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def get_credits(self, account_id: str) -> int | None:
        """Current balance, or None if the account does not exist."""
        with self._lock:
            row = self._get_connection().execute(
                "SELECT credits FROM accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
        return row["credits"] if row else None

    async def debit_credits(self, account_id: str, credits: int = 1, reason: str = "debit") -> bool:
        """
        Atomically debit credits if the balance covers them.

        Returns:
            bool: True if debited, False if the balance was too low or the
                account does not exist (nothing changed in either case)
        """
        if credits <= 0:
            raise ValueError(f"credits to debit must be positive, got {credits}")

        now = datetime.now(UTC).isoformat()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE accounts
                SET credits = credits - ?,
                    updated_at = ?
                WHERE account_id = ? AND credits >= ?
                """,
                (credits, now, account_id, credits),
            )
            debited = cursor.rowcount > 0
            if debited:
                self._log_audit(
                    conn,
                    account_id=account_id,
                    action="DEBIT",
                    resource_type="credits",
                    details=f"credits={credits} reason={reason}",
                )

        return debited

    async def restore_credits(
        self, account_id: str, credits: int = 1, reason: str = "restore"
    ) -> bool:
        """
        Atomically add credits back (compensation for a failed operation).

        Returns:
            bool: True if the account exists and was credited
        """
        if credits <= 0:
            raise ValueError(f"credits to restore must be positive, got {credits}")

        now = datetime.now(UTC).isoformat()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE accounts
                SET credits = credits + ?,
                    updated_at = ?
                WHERE account_id = ?
                """,
                (credits, now, account_id),
            )
            restored = cursor.rowcount > 0
            if restored:
                self._log_audit(
                    conn,
                    account_id=account_id,
                    action="RESTORE",
                    resource_type="credits",
                    details=f"credits={credits} reason={reason}",
                )

        return restored

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def apply_payment(
        self,
        *,
        account_id: str,
        credits: int,
        checkout_session_id: str,
        amount_cents: int | None = None,
        payment_reference: str | None = None,
        event_id: str | None = None,
    ) -> Transaction:
        """
        Credit an account for a completed payment and record the transaction.

        The duplicate check, balance increment and transaction insert run in
        one write transaction, so redelivered events cannot double-credit.

        Raises:
            DuplicateEvent: A transaction for this checkout session exists
            AccountNotFound: No account with this id
            sqlite3.Error: Any other datastore failure (nothing committed)
        """
        if credits <= 0:
            raise ValueError(f"credits to apply must be positive, got {credits}")

        transaction = Transaction(
            transaction_id=str(uuid.uuid4()),
            account_id=account_id,
            amount_cents=amount_cents,
            credits=credits,
            checkout_session_id=checkout_session_id,
            payment_reference=payment_reference,
            event_id=event_id,
            created_at=datetime.now(UTC),
        )
        now = transaction.created_at.isoformat()

        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT transaction_id FROM transactions WHERE checkout_session_id = ?",
                (checkout_session_id,),
            ).fetchone()
            if existing:
                raise DuplicateEvent(
                    f"Checkout session already credited: {checkout_session_id}",
                    transaction_id=existing["transaction_id"],
                    checkout_session_id=checkout_session_id,
                )

            cursor = conn.execute(
                """
                UPDATE accounts
                SET credits = credits + ?,
                    updated_at = ?
                WHERE account_id = ?
                """,
                (credits, now, account_id),
            )
            if cursor.rowcount == 0:
                raise AccountNotFound(
                    f"Account not found: {account_id}", account_id=account_id
                )

            try:
                conn.execute(
                    """
                    INSERT INTO transactions (
                        transaction_id, account_id, amount_cents, credits,
                        checkout_session_id, payment_reference, event_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        transaction.transaction_id,
                        account_id,
                        amount_cents,
                        credits,
                        checkout_session_id,
                        payment_reference,
                        event_id,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "UNIQUE constraint failed" in str(e):
                    raise DuplicateEvent(
                        f"Checkout session already credited: {checkout_session_id}",
                        checkout_session_id=checkout_session_id,
                    ) from e
                raise

            self._log_audit(
                conn,
                account_id=account_id,
                action="PURCHASE",
                resource_type="transaction",
                resource_id=transaction.transaction_id,
                details=f"credits={credits} session={checkout_session_id}",
            )

        logger.info(
            f"Applied payment: {credits} credits to {account_id} "
            f"(session {checkout_session_id})"
        )
        return transaction

    async def get_transaction_by_session(self, checkout_session_id: str) -> Transaction | None:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM transactions WHERE checkout_session_id = ?",
                (checkout_session_id,),
            ).fetchone()
        return self._row_to_transaction(row) if row else None

    async def list_transactions(self, account_id: str, limit: int = 5) -> list[Transaction]:
        """Most recent transactions first."""
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT * FROM transactions
                WHERE account_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (account_id, limit),
            ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            transaction_id=row["transaction_id"],
            account_id=row["account_id"],
            amount_cents=row["amount_cents"],
            credits=row["credits"],
            checkout_session_id=row["checkout_session_id"],
            payment_reference=row["payment_reference"],
            event_id=row["event_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Extractions and reviews
    # ------------------------------------------------------------------

    async def create_extractions(
        self,
        account_id: str,
        items: list[ExtractionCreate],
        requirements: str | None = None,
    ) -> list[Extraction]:
        """Persist one extraction row per image in a single transaction."""
        now = datetime.now(UTC)
        extractions = [
            Extraction(
                extraction_id=str(uuid.uuid4()),
                account_id=account_id,
                filename=item.filename,
                extracted_text=item.extracted_text,
                requirements=requirements,
                created_at=now,
            )
            for item in items
        ]

        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO extractions (
                    extraction_id, account_id, filename, extracted_text,
                    requirements, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        e.extraction_id,
                        e.account_id,
                        e.filename,
                        e.extracted_text,
                        e.requirements,
                        now.isoformat(),
                    )
                    for e in extractions
                ],
            )

        return extractions

    async def list_extractions(self, account_id: str, limit: int = 20) -> list[Extraction]:
        """Most recent extractions first."""
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT * FROM extractions
                WHERE account_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (account_id, limit),
            ).fetchall()

        return [
            Extraction(
                extraction_id=row["extraction_id"],
                account_id=row["account_id"],
                filename=row["filename"],
                extracted_text=row["extracted_text"],
                requirements=row["requirements"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def count_extractions(self, account_id: str) -> int:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT COUNT(*) AS n FROM extractions WHERE account_id = ?", (account_id,)
            ).fetchone()
        return int(row["n"])

    async def create_review(self, account_id: str, review_create: ReviewCreate) -> Review:
        review = Review(
            review_id=str(uuid.uuid4()),
            account_id=account_id,
            stars=review_create.stars,
            feedback=review_create.feedback,
        )

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO reviews (review_id, account_id, stars, feedback, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    review.review_id,
                    account_id,
                    review.stars,
                    review.feedback,
                    review.created_at.isoformat(),
                ),
            )

        return review

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Readiness check: True if a trivial query succeeds."""
        try:
            with self._lock:
                self._get_connection().execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.error(f"Database ping failed: {e}")
            return False

    def _log_audit(
        self,
        conn: sqlite3.Connection,
        action: str,
        resource_type: str,
        account_id: str | None = None,
        resource_id: str | None = None,
        details: str | None = None,
    ) -> None:
        """Append an audit row inside the caller's open transaction."""
        conn.execute(
            """
            INSERT INTO audit_log (
                timestamp, account_id, action, resource_type, resource_id, details
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (datetime.now(UTC).isoformat(), account_id, action, resource_type, resource_id, details),
        )

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
