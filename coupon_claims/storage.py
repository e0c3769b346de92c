"""
Persistence for coupons and claims.

Two stores share one interface:
- MemoryCouponStore: in-process, a single bounded lock around every operation.
- SqlCouponStore: SQLAlchemy Core tables. Active-claim uniqueness is enforced
  through the claim_guards table (one row per identity key).
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from itertools import count
from typing import Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .config import Settings
from .errors import ConflictError, StorageError
from .logging import get_logger
from .models import Claim, Coupon, IdentityField

logger = get_logger()

MEMORY_URL = "memory://"


def identity_keys(ip_address: str, browser_id: Optional[str]) -> List[str]:
    keys = [f"ip:{ip_address}"]
    if browser_id:
        keys.append(f"browser:{browser_id}")
    return keys


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CouponStore:
    """Storage port used by the eligibility, allocation and claim services."""

    def find_active_claim(self, field: IdentityField, value: str, since: datetime) -> Optional[Claim]:
        raise NotImplementedError

    def find_latest_claim(self, ip_address: str, browser_id: Optional[str]) -> Optional[Claim]:
        """Most recent claim matching the ip address or (when given) the browser id."""
        raise NotImplementedError

    def find_most_recent_claim(self) -> Optional[Claim]:
        raise NotImplementedError

    def insert_claim_if_absent(self, claim: Claim, since: datetime, assigned_to: str) -> Claim:
        """Record the claim and stamp its coupon, unless either identity axis
        already holds a claim made at or after `since`.

        Raises ConflictError when an active claim exists.
        """
        raise NotImplementedError

    def list_coupons_sorted_by_code(self) -> List[Coupon]:
        raise NotImplementedError

    def get_coupon_by_id(self, coupon_id: int) -> Optional[Coupon]:
        raise NotImplementedError

    def add_coupons(self, codes: Iterable[str]) -> List[Coupon]:
        raise NotImplementedError

    def count_coupons(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


# ---------------------------
# In-process store
# ---------------------------

class MemoryCouponStore(CouponStore):
    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._coupons: Dict[int, Coupon] = {}
        self._claims: Dict[int, Claim] = {}
        self._coupon_ids = count(1)
        self._claim_ids = count(1)

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise StorageError("Timed out waiting for the coupon store")
        try:
            yield
        finally:
            self._lock.release()

    def _matches(self, claim: Claim, field: IdentityField, value: str) -> bool:
        if field is IdentityField.IP_ADDRESS:
            return claim.ipAddress == value
        return claim.browserId == value

    def find_active_claim(self, field: IdentityField, value: str, since: datetime) -> Optional[Claim]:
        with self._locked():
            for claim in self._claims.values():
                if self._matches(claim, field, value) and claim.claimedAt >= since:
                    return claim
        return None

    def find_latest_claim(self, ip_address: str, browser_id: Optional[str]) -> Optional[Claim]:
        with self._locked():
            matching = [
                c for c in self._claims.values()
                if c.ipAddress == ip_address or (browser_id and c.browserId == browser_id)
            ]
        return max(matching, key=lambda c: c.claimedAt, default=None)

    def find_most_recent_claim(self) -> Optional[Claim]:
        with self._locked():
            # ties on claimedAt resolve to the later insert
            return max(self._claims.values(), key=lambda c: (c.claimedAt, c.id), default=None)

    def insert_claim_if_absent(self, claim: Claim, since: datetime, assigned_to: str) -> Claim:
        with self._locked():
            for existing in self._claims.values():
                if existing.claimedAt < since:
                    continue
                if existing.ipAddress == claim.ipAddress or (
                    claim.browserId and existing.browserId == claim.browserId
                ):
                    raise ConflictError("An active claim already exists for this identity")

            coupon = self._coupons.get(claim.couponId)
            if coupon is None:
                raise StorageError(f"Coupon {claim.couponId} does not exist")

            saved = claim.model_copy(update={"id": next(self._claim_ids)})
            self._claims[saved.id] = saved
            self._coupons[coupon.id] = coupon.model_copy(
                update={"isAssigned": True, "assignedAt": claim.claimedAt, "assignedTo": assigned_to}
            )
            return saved

    def list_coupons_sorted_by_code(self) -> List[Coupon]:
        with self._locked():
            return sorted(self._coupons.values(), key=lambda c: c.code)

    def get_coupon_by_id(self, coupon_id: int) -> Optional[Coupon]:
        with self._locked():
            return self._coupons.get(coupon_id)

    def add_coupons(self, codes: Iterable[str]) -> List[Coupon]:
        with self._locked():
            existing = {c.code for c in self._coupons.values()}
            created = []
            for code in codes:
                if code in existing:
                    raise StorageError(f"Coupon code already exists: {code}")
                coupon = Coupon(id=next(self._coupon_ids), code=code)
                self._coupons[coupon.id] = coupon
                existing.add(code)
                created.append(coupon)
            return created

    def count_coupons(self) -> int:
        with self._locked():
            return len(self._coupons)


# ---------------------------
# SQL store
# ---------------------------

metadata = MetaData()

coupons = Table(
    "coupons",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(100), nullable=False, unique=True),
    Column("is_assigned", Boolean, nullable=False, default=False),
    Column("assigned_at", DateTime(timezone=True), nullable=True),
    Column("assigned_to", String(300), nullable=True),
)

claims = Table(
    "claims",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ip_address", String(100), nullable=False),
    Column("browser_id", String(200), nullable=True),
    Column("coupon_id", Integer, ForeignKey("coupons.id"), nullable=False),
    Column("claimed_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    # Eligibility lookups: (identity, claimed_at)
    Index("idx_claims_ip_claimed", "ip_address", "claimed_at"),
    Index("idx_claims_browser_claimed", "browser_id", "claimed_at"),
    # Round-robin cursor: most recent claim overall
    Index("idx_claims_claimed_at", "claimed_at"),
)

# One row per identity key ("ip:<addr>", "browser:<id>") holding an active claim.
# The primary key is what makes concurrent claims for one identity collide.
claim_guards = Table(
    "claim_guards",
    metadata,
    Column("identity_key", String(300), primary_key=True),
    Column("claim_id", Integer, ForeignKey("claims.id"), nullable=False),
    Column("claimed_at", DateTime(timezone=True), nullable=False),
)


def _coupon_from_row(row) -> Coupon:
    return Coupon(
        id=row.id,
        code=row.code,
        isAssigned=bool(row.is_assigned),
        assignedAt=_utc(row.assigned_at),
        assignedTo=row.assigned_to,
    )


def _claim_from_row(row) -> Claim:
    return Claim(
        id=row.id,
        ipAddress=row.ip_address,
        browserId=row.browser_id,
        couponId=row.coupon_id,
        claimedAt=_utc(row.claimed_at),
    )


class SqlCouponStore(CouponStore):
    def __init__(self, database_url: str, lock_timeout: float = 5.0):
        self.database_url = database_url
        self.engine = self._create_engine(database_url, lock_timeout)
        metadata.create_all(bind=self.engine)

    @staticmethod
    def _create_engine(url: str, lock_timeout: float):
        if url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False, "timeout": lock_timeout}}
            if ":memory:" in url or url.rstrip("/") == "sqlite:":
                # Share the single in-memory database across sessions
                kwargs["poolclass"] = StaticPool
            return create_engine(url, **kwargs)
        return create_engine(url, pool_pre_ping=True, pool_timeout=lock_timeout)

    @contextmanager
    def _translate_errors(self, operation: str):
        try:
            yield
        except (ConflictError, StorageError):
            raise
        except SQLAlchemyError as exc:
            logger.error("store.failure", exc_info=True, extra={"event_type": operation})
            raise StorageError(f"Coupon store failure during {operation}") from exc

    def find_active_claim(self, field: IdentityField, value: str, since: datetime) -> Optional[Claim]:
        column = claims.c.ip_address if field is IdentityField.IP_ADDRESS else claims.c.browser_id
        stmt = select(claims).where(column == value, claims.c.claimed_at >= _utc(since)).limit(1)
        with self._translate_errors("find_active_claim"):
            with self.engine.connect() as conn:
                row = conn.execute(stmt).first()
        return _claim_from_row(row) if row else None

    def find_latest_claim(self, ip_address: str, browser_id: Optional[str]) -> Optional[Claim]:
        condition = claims.c.ip_address == ip_address
        if browser_id:
            condition = or_(condition, claims.c.browser_id == browser_id)
        stmt = select(claims).where(condition).order_by(claims.c.claimed_at.desc(), claims.c.id.desc()).limit(1)
        with self._translate_errors("find_latest_claim"):
            with self.engine.connect() as conn:
                row = conn.execute(stmt).first()
        return _claim_from_row(row) if row else None

    def find_most_recent_claim(self) -> Optional[Claim]:
        stmt = select(claims).order_by(claims.c.claimed_at.desc(), claims.c.id.desc()).limit(1)
        with self._translate_errors("find_most_recent_claim"):
            with self.engine.connect() as conn:
                row = conn.execute(stmt).first()
        return _claim_from_row(row) if row else None

    def insert_claim_if_absent(self, claim: Claim, since: datetime, assigned_to: str) -> Claim:
        keys = identity_keys(claim.ipAddress, claim.browserId)
        claimed_at = _utc(claim.claimedAt)
        since = _utc(since)
        with self._translate_errors("insert_claim_if_absent"):
            with self.engine.begin() as conn:
                # Expired guards no longer block the identity
                conn.execute(
                    delete(claim_guards).where(
                        claim_guards.c.identity_key.in_(keys),
                        claim_guards.c.claimed_at < since,
                    )
                )
                result = conn.execute(
                    insert(claims).values(
                        ip_address=claim.ipAddress,
                        browser_id=claim.browserId,
                        coupon_id=claim.couponId,
                        claimed_at=claimed_at,
                    )
                )
                claim_id = result.inserted_primary_key[0]
                try:
                    conn.execute(
                        insert(claim_guards),
                        [{"identity_key": key, "claim_id": claim_id, "claimed_at": claimed_at} for key in keys],
                    )
                except IntegrityError as exc:
                    # Only a guard key collision means another active claim won
                    raise ConflictError("An active claim already exists for this identity") from exc
                stamped = conn.execute(
                    update(coupons)
                    .where(coupons.c.id == claim.couponId)
                    .values(is_assigned=True, assigned_at=claimed_at, assigned_to=assigned_to)
                )
                if stamped.rowcount == 0:
                    raise StorageError(f"Coupon {claim.couponId} does not exist")
        return claim.model_copy(update={"id": claim_id, "claimedAt": claimed_at})

    def list_coupons_sorted_by_code(self) -> List[Coupon]:
        with self._translate_errors("list_coupons"):
            with self.engine.connect() as conn:
                rows = conn.execute(select(coupons).order_by(coupons.c.code.asc())).all()
        return [_coupon_from_row(row) for row in rows]

    def get_coupon_by_id(self, coupon_id: int) -> Optional[Coupon]:
        with self._translate_errors("get_coupon_by_id"):
            with self.engine.connect() as conn:
                row = conn.execute(select(coupons).where(coupons.c.id == coupon_id)).first()
        return _coupon_from_row(row) if row else None

    def add_coupons(self, codes: Iterable[str]) -> List[Coupon]:
        codes = list(codes)
        if not codes:
            return []
        with self._translate_errors("add_coupons"):
            try:
                with self.engine.begin() as conn:
                    conn.execute(insert(coupons), [{"code": code, "is_assigned": False} for code in codes])
                    rows = conn.execute(select(coupons).where(coupons.c.code.in_(codes))).all()
            except IntegrityError as exc:
                raise StorageError("Coupon code already exists") from exc
        return sorted((_coupon_from_row(row) for row in rows), key=lambda c: c.id)

    def count_coupons(self) -> int:
        with self._translate_errors("count_coupons"):
            with self.engine.connect() as conn:
                return conn.execute(select(func.count()).select_from(coupons)).scalar_one()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------
# Lifecycle helpers
# ---------------------------

def open_store(settings: Settings) -> CouponStore:
    """Open the store named by DATABASE_URL (creates tables when needed)."""
    if settings.DATABASE_URL == MEMORY_URL:
        store: CouponStore = MemoryCouponStore(lock_timeout=settings.LOCK_TIMEOUT_SECONDS)
    else:
        store = SqlCouponStore(settings.DATABASE_URL, lock_timeout=settings.LOCK_TIMEOUT_SECONDS)
    logger.info("store.opened", extra={"event_type": type(store).__name__})
    return store


def seed_coupons(store: CouponStore, codes: Iterable[str]) -> List[Coupon]:
    """Insert the given codes when the store has no coupons yet."""
    if store.count_coupons() > 0:
        return []
    created = store.add_coupons(codes)
    logger.info(f"Seeded {len(created)} coupons")
    return created
