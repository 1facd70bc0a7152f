"""
Billing state storage using SQLite.

Tables:
- users: tier record per user (mirrors the owning subscription's tier)
- subscriptions: local copy of provider subscriptions
- provider_events: one row per admitted webhook event (UNIQUE event_id)
- billable_actions: cost-incurring actions and their usage-reported flag
- audit_log: append-only trail of tier/status mutations

Consistency:
- Every webhook is applied inside one BEGIN IMMEDIATE transaction on its own
  connection (see transaction()). The event row, subscription writes, tier
  writes and audit rows commit together or not at all.
- The UNIQUE index on provider_events.event_id turns a concurrent duplicate
  delivery into an IntegrityError, which admit_event() reports as a duplicate.
- Usage reporting claims a billable action with a conditional UPDATE, so at
  most one worker calls the provider for a given action.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from tollgate.models.billing import (
    BillableAction,
    Subscription,
    SubscriptionStatus,
    Tier,
    User,
)

logger = logging.getLogger(__name__)


def _to_iso(value: datetime | None) -> str | None:
    # Fixed-width timestamps so string comparison in SQL matches time order
    return value.astimezone(UTC).isoformat(timespec="microseconds") if value else None


def _now_iso() -> str:
    return _to_iso(datetime.now(UTC))


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class BillingDatabase:
    """
    Billing state storage.

    Reads go through a shared connection. Writes that must be atomic use
    transaction(), which opens a dedicated connection per unit of work so
    concurrent webhook deliveries never share transaction state.
    """

    def __init__(self, db_path: str = "./data/billing.db", busy_timeout_seconds: float = 5.0):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a writer waits for the write lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA foreign_keys = ON")

            # WAL lets readers proceed while a webhook transaction holds the write lock
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    email TEXT,
                    tier TEXT NOT NULL DEFAULT 'trial',
                    provider_customer_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (tier IN ('trial', 'payg', 'pro', 'cancelled'))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider_subscription_id TEXT NOT NULL UNIQUE,
                    provider_subscription_item_id TEXT,
                    provider_customer_id TEXT,
                    provider_order_id TEXT,
                    provider_product_id TEXT,
                    provider_variant_id TEXT,
                    tier TEXT NOT NULL,
                    status TEXT NOT NULL,
                    renews_at TEXT,
                    ends_at TEXT,
                    trial_ends_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                        ON DELETE CASCADE
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS provider_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    received_at TEXT NOT NULL,

                    CHECK (processed IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS billable_actions (
                    action_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    cost_usd REAL NOT NULL DEFAULT 0,
                    usage_reported INTEGER NOT NULL DEFAULT 0,
                    report_claimed_at TEXT,
                    created_at TEXT NOT NULL,
                    reported_at TEXT,

                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                        ON DELETE CASCADE,
                    CHECK (usage_reported IN (0, 1)),
                    CHECK (cost_usd >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT,
                    source TEXT
                )
            """
            )

            conn.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_status ON subscriptions(status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_actions_user_created "
                "ON billable_actions(user_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_actions_unreported "
                "ON billable_actions(usage_reported, created_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id)")

            conn.commit()
            logger.info("Billing database initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get shared read connection (creates if needed)."""
        if self._conn is None:
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
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a unit of work in its own BEGIN IMMEDIATE transaction.

        Commits on normal exit, rolls back on any exception and re-raises.
        The write lock is taken up front, so a check-then-insert inside the
        block cannot interleave with another writer.
        """
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    # ========================================================================
    # EVENT ADMISSION
    # ========================================================================

    def admit_event(
        self,
        conn: sqlite3.Connection,
        event_id: str,
        event_type: str,
        payload: dict,
    ) -> bool:
        """
        Record a webhook event inside the caller's transaction.

        Returns:
            bool: True if admitted, False if this event id was already seen
        """
        row = conn.execute(
            "SELECT processed FROM provider_events WHERE event_id = ?", (event_id,)
        ).fetchone()
        if row is not None and row["processed"]:
            return False

        try:
            conn.execute(
                """
                INSERT INTO provider_events (event_id, event_type, payload, processed, received_at)
                VALUES (?, ?, ?, 1, ?)
                """,
                (event_id, event_type, json.dumps(payload), _now_iso()),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.info("Event already admitted by another delivery", extra={"event_id": event_id})
                return False
            raise

        return True

    async def get_event(self, event_id: str) -> dict | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM provider_events WHERE event_id = ?", (event_id,)
        ).fetchone()
        if not row:
            return None
        return {
            "event_id": row["event_id"],
            "event_type": row["event_type"],
            "payload": json.loads(row["payload"]),
            "processed": bool(row["processed"]),
            "received_at": _from_iso(row["received_at"]),
        }

    async def count_events(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) FROM provider_events").fetchone()[0]

    # ========================================================================
    # USERS
    # ========================================================================

    async def create_user(self, user_id: str, email: str | None = None, tier: Tier = Tier.TRIAL) -> User | None:
        """
        Provision a user record.

        Returns:
            User: Created user, or None if user_id already exists
        """
        now = datetime.now(UTC)
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO users (user_id, email, tier, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, email, tier.value, _to_iso(now), _to_iso(now)),
                )
                self.log_audit(
                    conn,
                    action="CREATE",
                    resource_type="user",
                    user_id=user_id,
                    resource_id=user_id,
                    details={"tier": tier.value},
                    source="provisioning",
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(f"User creation failed: {user_id} already exists")
                return None
            raise

        return User(user_id=user_id, email=email, tier=tier, created_at=now, updated_at=now)

    async def get_user(self, user_id: str) -> User | None:
        return self.fetch_user(self._get_connection(), user_id)

    def fetch_user(self, conn: sqlite3.Connection, user_id: str) -> User | None:
        row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if not row:
            return None
        return User(
            user_id=row["user_id"],
            email=row["email"],
            tier=Tier(row["tier"]),
            provider_customer_id=row["provider_customer_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def update_user_tier(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        tier: Tier,
        provider_customer_id: str | None = None,
        source: str = "webhook",
    ) -> bool:
        """
        Set a user's tier inside the caller's transaction.

        Returns:
            bool: True if the user exists
        """
        now = _now_iso()
        if provider_customer_id is not None:
            cursor = conn.execute(
                """
                UPDATE users SET tier = ?, provider_customer_id = ?, updated_at = ?
                WHERE user_id = ?
                """,
                (tier.value, provider_customer_id, now, user_id),
            )
        else:
            cursor = conn.execute(
                "UPDATE users SET tier = ?, updated_at = ? WHERE user_id = ?",
                (tier.value, now, user_id),
            )

        if cursor.rowcount == 0:
            return False

        self.log_audit(
            conn,
            action="TIER_CHANGE",
            resource_type="user",
            user_id=user_id,
            resource_id=user_id,
            details={"tier": tier.value},
            source=source,
        )
        return True

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    def _row_to_subscription(self, row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            provider_subscription_id=row["provider_subscription_id"],
            provider_subscription_item_id=row["provider_subscription_item_id"],
            provider_customer_id=row["provider_customer_id"],
            provider_order_id=row["provider_order_id"],
            provider_product_id=row["provider_product_id"],
            provider_variant_id=row["provider_variant_id"],
            tier=Tier(row["tier"]),
            status=SubscriptionStatus(row["status"]),
            renews_at=_from_iso(row["renews_at"]),
            ends_at=_from_iso(row["ends_at"]),
            trial_ends_at=_from_iso(row["trial_ends_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def fetch_subscription(
        self, conn: sqlite3.Connection, provider_subscription_id: str
    ) -> Subscription | None:
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE provider_subscription_id = ?",
            (provider_subscription_id,),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def get_subscription(self, provider_subscription_id: str) -> Subscription | None:
        return self.fetch_subscription(self._get_connection(), provider_subscription_id)

    async def get_current_subscription(self, user_id: str) -> Subscription | None:
        """Most recently updated subscription for a user."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT * FROM subscriptions WHERE user_id = ?
            ORDER BY updated_at DESC LIMIT 1
            """,
            (user_id,),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def list_subscriptions_by_status(
        self, statuses: list[SubscriptionStatus]
    ) -> list[Subscription]:
        conn = self._get_connection()
        placeholders = ", ".join("?" for _ in statuses)
        rows = conn.execute(
            f"SELECT * FROM subscriptions WHERE status IN ({placeholders}) ORDER BY created_at",
            [s.value for s in statuses],
        ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    async def list_provider_subscription_ids(self) -> set[str]:
        conn = self._get_connection()
        rows = conn.execute("SELECT provider_subscription_id FROM subscriptions").fetchall()
        return {row["provider_subscription_id"] for row in rows}

    def upsert_subscription(self, conn: sqlite3.Connection, subscription: Subscription) -> None:
        """Insert or replace a subscription keyed by provider id, inside the caller's transaction."""
        now = _now_iso()
        conn.execute(
            """
            INSERT INTO subscriptions (
                id, user_id, provider_subscription_id, provider_subscription_item_id,
                provider_customer_id, provider_order_id, provider_product_id,
                provider_variant_id, tier, status, renews_at, ends_at, trial_ends_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(provider_subscription_id) DO UPDATE SET
                user_id = excluded.user_id,
                provider_subscription_item_id = excluded.provider_subscription_item_id,
                provider_customer_id = excluded.provider_customer_id,
                provider_order_id = excluded.provider_order_id,
                provider_product_id = excluded.provider_product_id,
                provider_variant_id = excluded.provider_variant_id,
                tier = excluded.tier,
                status = excluded.status,
                renews_at = excluded.renews_at,
                ends_at = excluded.ends_at,
                trial_ends_at = excluded.trial_ends_at,
                updated_at = excluded.updated_at
            """,
            (
                subscription.id or str(uuid.uuid4()),
                subscription.user_id,
                subscription.provider_subscription_id,
                subscription.provider_subscription_item_id,
                subscription.provider_customer_id,
                subscription.provider_order_id,
                subscription.provider_product_id,
                subscription.provider_variant_id,
                subscription.tier.value,
                subscription.status.value,
                _to_iso(subscription.renews_at),
                _to_iso(subscription.ends_at),
                _to_iso(subscription.trial_ends_at),
                now,
                now,
            ),
        )
        self.log_audit(
            conn,
            action="UPSERT",
            resource_type="subscription",
            user_id=subscription.user_id,
            resource_id=subscription.provider_subscription_id,
            details={"tier": subscription.tier.value, "status": subscription.status.value},
            source="webhook",
        )

    def update_subscription_state(
        self,
        conn: sqlite3.Connection,
        provider_subscription_id: str,
        status: SubscriptionStatus,
        renews_at: datetime | None = None,
        ends_at: datetime | None = None,
        trial_ends_at: datetime | None = None,
    ) -> bool:
        """
        Update status and (when given) dates inside the caller's transaction.

        Dates passed as None keep their stored value.
        """
        cursor = conn.execute(
            """
            UPDATE subscriptions
            SET status = ?,
                renews_at = COALESCE(?, renews_at),
                ends_at = COALESCE(?, ends_at),
                trial_ends_at = COALESCE(?, trial_ends_at),
                updated_at = ?
            WHERE provider_subscription_id = ?
            """,
            (
                status.value,
                _to_iso(renews_at),
                _to_iso(ends_at),
                _to_iso(trial_ends_at),
                _now_iso(),
                provider_subscription_id,
            ),
        )
        if cursor.rowcount == 0:
            return False

        row = conn.execute(
            "SELECT user_id FROM subscriptions WHERE provider_subscription_id = ?",
            (provider_subscription_id,),
        ).fetchone()
        self.log_audit(
            conn,
            action="STATUS_CHANGE",
            resource_type="subscription",
            user_id=row["user_id"] if row else None,
            resource_id=provider_subscription_id,
            details={"status": status.value},
            source="webhook",
        )
        return True

    # ========================================================================
    # BILLABLE ACTIONS
    # ========================================================================

    def _row_to_action(self, row: sqlite3.Row) -> BillableAction:
        return BillableAction(
            action_id=row["action_id"],
            user_id=row["user_id"],
            cost_usd=row["cost_usd"],
            usage_reported=bool(row["usage_reported"]),
            report_claimed_at=_from_iso(row["report_claimed_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            reported_at=_from_iso(row["reported_at"]),
        )

    async def record_billable_action(
        self,
        user_id: str,
        cost_usd: float,
        action_id: str | None = None,
        created_at: datetime | None = None,
    ) -> BillableAction | None:
        """
        Persist a completed billable action.

        Returns:
            BillableAction, or None if action_id already exists
        """
        action = BillableAction(
            action_id=action_id or str(uuid.uuid4()),
            user_id=user_id,
            cost_usd=cost_usd,
            created_at=created_at or datetime.now(UTC),
        )
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO billable_actions (action_id, user_id, cost_usd, usage_reported, created_at)
                    VALUES (?, ?, ?, 0, ?)
                    """,
                    (action.action_id, user_id, cost_usd, _to_iso(action.created_at)),
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(f"Billable action {action.action_id} already recorded")
                return None
            raise

        return action

    async def get_billable_action(self, action_id: str) -> BillableAction | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM billable_actions WHERE action_id = ?", (action_id,)
        ).fetchone()
        return self._row_to_action(row) if row else None

    async def claim_billable_action(self, action_id: str, stale_before: datetime) -> bool:
        """
        Claim an unreported action for reporting.

        A claim older than stale_before is treated as abandoned and can be
        taken over.

        Returns:
            bool: True if this caller now owns the report
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE billable_actions SET report_claimed_at = ?
                WHERE action_id = ?
                  AND usage_reported = 0
                  AND (report_claimed_at IS NULL OR report_claimed_at < ?)
                """,
                (_now_iso(), action_id, _to_iso(stale_before)),
            )
            return cursor.rowcount == 1

    async def release_claim(self, action_id: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE billable_actions SET report_claimed_at = NULL
                WHERE action_id = ? AND usage_reported = 0
                """,
                (action_id,),
            )

    async def mark_action_reported(self, action_id: str, usage_record_id: str | None = None) -> bool:
        """
        Flip usage_reported false -> true.

        Returns:
            bool: True if this call performed the transition
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE billable_actions
                SET usage_reported = 1, reported_at = ?, report_claimed_at = NULL
                WHERE action_id = ? AND usage_reported = 0
                """,
                (_now_iso(), action_id),
            )
            if cursor.rowcount == 1:
                row = conn.execute(
                    "SELECT user_id FROM billable_actions WHERE action_id = ?", (action_id,)
                ).fetchone()
                self.log_audit(
                    conn,
                    action="USAGE_REPORTED",
                    resource_type="billable_action",
                    user_id=row["user_id"],
                    resource_id=action_id,
                    details={"usage_record_id": usage_record_id},
                    source="usage_reporter",
                )
            return cursor.rowcount == 1

    async def list_unreported_actions(self, created_before: datetime, limit: int = 100) -> list[BillableAction]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM billable_actions
            WHERE usage_reported = 0 AND created_at < ?
            ORDER BY created_at
            LIMIT ?
            """,
            (_to_iso(created_before), limit),
        ).fetchall()
        return [self._row_to_action(row) for row in rows]

    async def count_billable_actions(self, user_id: str, since: datetime, until: datetime | None = None) -> int:
        conn = self._get_connection()
        until = until or datetime.now(UTC)
        return conn.execute(
            """
            SELECT COUNT(*) FROM billable_actions
            WHERE user_id = ? AND created_at >= ? AND created_at < ?
            """,
            (user_id, _to_iso(since), _to_iso(until)),
        ).fetchone()[0]

    # ========================================================================
    # AUDIT
    # ========================================================================

    def log_audit(
        self,
        conn: sqlite3.Connection,
        action: str,
        resource_type: str,
        user_id: str | None = None,
        resource_id: str | None = None,
        details: dict | None = None,
        source: str | None = None,
    ) -> None:
        """
        Append an audit row inside the caller's transaction.

        Args:
            action: Action performed (CREATE, UPSERT, TIER_CHANGE, ...)
            resource_type: user, subscription or billable_action
            user_id: Owning user
            resource_id: ID of affected resource
            details: Extra context, stored as JSON
            source: Writer that made the change (webhook, provisioning, ...)
        """
        conn.execute(
            """
            INSERT INTO audit_log (timestamp, user_id, action, resource_type, resource_id, details, source)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                _now_iso(),
                user_id,
                action,
                resource_type,
                resource_id,
                json.dumps(details) if details is not None else None,
                source,
            ),
        )

    async def get_audit_entries(self, resource_id: str) -> list[dict]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM audit_log WHERE resource_id = ? ORDER BY id", (resource_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
