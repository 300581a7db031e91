"""
Entitlement store: data-access interface for the payment core.

The reconciler and the review workflow only talk to a PaymentStore. The SQL
implementation is bound to one session, so everything done through one
open_store() block commits (or rolls back) together.
"""
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol
from uuid import uuid4

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.orm import Session

from fitbill.core.clock import as_utc
from fitbill.core.database import (
    admin_actions,
    entitlements,
    get_db_session,
    job_runs,
    ledger_entries,
    payment_requests,
    store_call,
    users,
)
from fitbill.features.entitlements.models import Entitlement
from fitbill.features.payments.models import AuditEntry, PaymentRequest, PaymentStatus
from fitbill.features.plans.resolver import PlanTier


class PaymentStore(Protocol):
    """Collaborator interface consumed by the payment core."""

    def find_user_by_email(self, email: str) -> Optional[str]:
        ...

    def user_exists(self, user_id: str) -> bool:
        ...

    def get_entitlement(self, user_id: str) -> Entitlement:
        ...

    def upsert_entitlement(self, user_id: str, tier: PlanTier, expires_at: Optional[datetime], *, now: datetime) -> None:
        ...

    def set_ads_expiry(self, user_id: str, expires_at: datetime, *, now: datetime) -> None:
        ...

    def insert_payment_request(self, **fields: Any) -> str:
        ...

    def get_payment_request(self, request_id: str) -> Optional[PaymentRequest]:
        ...

    def update_payment_request(self, request_id: str, fields: Dict[str, Any]) -> None:
        ...

    def transition_payment_request(
        self, request_id: str, *, from_status: PaymentStatus, fields: Dict[str, Any]
    ) -> bool:
        ...

    def find_approved_payment_request(self, provider: str, external_transaction_id: str) -> Optional[str]:
        ...

    def find_income_ledger_entry(self, reference_id: str, category: Optional[str] = None) -> bool:
        ...

    def insert_ledger_entry(
        self,
        *,
        entry_type: str,
        amount_cents: int,
        description: str,
        category: str,
        reference_id: Optional[str],
        entry_date: date,
    ) -> None:
        ...

    def insert_audit_entry(
        self,
        *,
        actor_id: str,
        action: str,
        entity_table: str,
        entity_id: Optional[str],
        target_user_id: Optional[str],
        details: Optional[Dict[str, Any]],
        created_at: datetime,
    ) -> int:
        ...


def _to_entitlement(row) -> Entitlement:
    return Entitlement(
        user_id=row.user_id,
        plan_tier=PlanTier.parse(row.plan_tier),
        plan_expires_at=as_utc(row.plan_expires_at),
        ads_active=bool(row.ads_active),
        ads_expires_at=as_utc(row.ads_expires_at),
        updated_at=as_utc(row.updated_at),
    )


def _to_payment_request(row, *, user_name: Optional[str] = None, user_email: Optional[str] = None) -> PaymentRequest:
    return PaymentRequest(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        desired_plan_tier=PlanTier.parse(row.desired_plan_tier),
        status=PaymentStatus(row.status),
        requested_at=as_utc(row.requested_at),
        processed_at=as_utc(row.processed_at),
        processed_by=row.processed_by,
        evidence_reference=row.evidence_reference,
        reviewed_evidence_reference=row.reviewed_evidence_reference,
        rejection_reason=row.rejection_reason,
        external_transaction_id=row.external_transaction_id,
        amount_cents=row.amount_cents,
        user_name=user_name,
        user_email=user_email,
    )


def _display_name(display_name: Optional[str], email: Optional[str]) -> str:
    if display_name:
        return display_name
    if email:
        return email.split("@")[0]
    return "(usuário)"


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in fields.items():
        if key not in payment_requests.c:
            raise KeyError(f"Unknown payment_requests column: {key}")
        if isinstance(value, (PlanTier, PaymentStatus)):
            value = value.value
        values[key] = value
    return values


class SqlPaymentStore:
    """PaymentStore backed by SQLAlchemy Core tables, bound to one session."""

    def __init__(self, session: Session):
        self.session = session

    # -- identity -----------------------------------------------------------

    def find_user_by_email(self, email: str) -> Optional[str]:
        if not email:
            return None
        row = self.session.execute(
            select(users.c.user_id)
            .where(func.lower(users.c.email) == email.strip().lower())
            .limit(1)
        ).fetchone()
        return row[0] if row else None

    def user_exists(self, user_id: str) -> bool:
        row = self.session.execute(
            select(users.c.user_id).where(users.c.user_id == user_id)
        ).fetchone()
        return row is not None

    # -- entitlements -------------------------------------------------------

    def get_entitlement(self, user_id: str) -> Entitlement:
        row = self.session.execute(
            select(entitlements).where(entitlements.c.user_id == user_id)
        ).fetchone()
        if not row:
            return Entitlement(user_id=user_id)
        return _to_entitlement(row)

    def _entitlement_exists(self, user_id: str) -> bool:
        return self.session.execute(
            select(entitlements.c.user_id).where(entitlements.c.user_id == user_id)
        ).fetchone() is not None

    def upsert_entitlement(self, user_id: str, tier: PlanTier, expires_at: Optional[datetime], *, now: datetime) -> None:
        values = {
            "plan_tier": PlanTier.parse(tier).value,
            "plan_expires_at": expires_at,
            "updated_at": now,
        }
        if self._entitlement_exists(user_id):
            self.session.execute(
                update(entitlements).where(entitlements.c.user_id == user_id).values(**values)
            )
        else:
            self.session.execute(
                insert(entitlements).values(user_id=user_id, ads_active=False, **values)
            )

    def set_ads_expiry(self, user_id: str, expires_at: datetime, *, now: datetime) -> None:
        values = {"ads_active": True, "ads_expires_at": expires_at, "updated_at": now}
        if self._entitlement_exists(user_id):
            self.session.execute(
                update(entitlements).where(entitlements.c.user_id == user_id).values(**values)
            )
        else:
            self.session.execute(
                insert(entitlements).values(
                    user_id=user_id, plan_tier=PlanTier.FREE.value, plan_expires_at=None, **values
                )
            )

    def list_lapsed_paid_entitlements(self, now: datetime, limit: int) -> List[Entitlement]:
        """Lapsed paid rows, locked until the caller's transaction ends."""
        rows = self.session.execute(
            select(entitlements)
            .where(entitlements.c.plan_tier.in_([PlanTier.ADVANCE.value, PlanTier.ELITE.value]))
            .where(entitlements.c.plan_expires_at.isnot(None))
            .where(entitlements.c.plan_expires_at < now)
            .order_by(entitlements.c.user_id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        ).fetchall()
        return [_to_entitlement(r) for r in rows]

    def downgrade_entitlements(self, user_ids: List[str], *, now: datetime) -> List[str]:
        """Returns the ids actually downgraded."""
        if not user_ids:
            return []
        # Re-check the expiry so a renewal racing the sweep is never undone
        result = self.session.execute(
            update(entitlements)
            .where(entitlements.c.user_id.in_(user_ids))
            .where(entitlements.c.plan_expires_at < now)
            .values(plan_tier=PlanTier.FREE.value, plan_expires_at=None, updated_at=now)
            .returning(entitlements.c.user_id)
        )
        return sorted(r[0] for r in result.fetchall())

    # -- payment requests ---------------------------------------------------

    def insert_payment_request(self, **fields: Any) -> str:
        values = _column_values(fields)
        request_id = values.pop("id", None) or str(uuid4())
        self.session.execute(insert(payment_requests).values(id=request_id, **values))
        return request_id

    def get_payment_request(self, request_id: str) -> Optional[PaymentRequest]:
        row = self.session.execute(
            select(payment_requests).where(payment_requests.c.id == request_id)
        ).fetchone()
        return _to_payment_request(row) if row else None

    def update_payment_request(self, request_id: str, fields: Dict[str, Any]) -> None:
        self.session.execute(
            update(payment_requests)
            .where(payment_requests.c.id == request_id)
            .values(**_column_values(fields))
        )

    def transition_payment_request(
        self, request_id: str, *, from_status: PaymentStatus, fields: Dict[str, Any]
    ) -> bool:
        """Conditional update; False when the row is no longer in from_status."""
        result = self.session.execute(
            update(payment_requests)
            .where(payment_requests.c.id == request_id)
            .where(payment_requests.c.status == from_status.value)
            .values(**_column_values(fields))
        )
        return (result.rowcount or 0) == 1

    def list_payment_requests(
        self,
        *,
        status: Optional[PaymentStatus] = None,
        user_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[PaymentRequest]:
        query = (
            select(payment_requests, users.c.display_name, users.c.email)
            .select_from(payment_requests.outerjoin(users, payment_requests.c.user_id == users.c.user_id))
        )
        if status is not None:
            query = query.where(payment_requests.c.status == status.value)
        if user_id is not None:
            query = query.where(payment_requests.c.user_id == user_id)
        query = query.order_by(payment_requests.c.requested_at.desc(), payment_requests.c.id.desc()).limit(limit)

        return [
            _to_payment_request(
                row,
                user_name=_display_name(row.display_name, row.email),
                user_email=row.email or "(sem e-mail)",
            )
            for row in self.session.execute(query).fetchall()
        ]

    def count_payment_requests(self, status: PaymentStatus) -> int:
        return int(
            self.session.execute(
                select(func.count()).select_from(payment_requests).where(payment_requests.c.status == status.value)
            ).scalar()
            or 0
        )

    def has_pending_request(self, user_id: str, provider: Optional[str] = None) -> bool:
        query = (
            select(payment_requests.c.id)
            .where(payment_requests.c.user_id == user_id)
            .where(payment_requests.c.status == PaymentStatus.PENDING.value)
        )
        if provider is not None:
            query = query.where(payment_requests.c.provider == provider)
        return self.session.execute(query.limit(1)).fetchone() is not None

    def find_approved_payment_request(self, provider: str, external_transaction_id: str) -> Optional[str]:
        row = self.session.execute(
            select(payment_requests.c.id).where(
                and_(
                    payment_requests.c.provider == provider,
                    payment_requests.c.external_transaction_id == external_transaction_id,
                    payment_requests.c.status == PaymentStatus.APPROVED.value,
                )
            )
        ).fetchone()
        return row[0] if row else None

    # -- ledger -------------------------------------------------------------

    def find_income_ledger_entry(self, reference_id: str, category: Optional[str] = None) -> bool:
        query = select(ledger_entries.c.id).where(
            ledger_entries.c.entry_type == "income",
            ledger_entries.c.reference_id == reference_id,
        )
        if category is not None:
            query = query.where(ledger_entries.c.category == category)
        return self.session.execute(query.limit(1)).fetchone() is not None

    def insert_ledger_entry(
        self,
        *,
        entry_type: str,
        amount_cents: int,
        description: str,
        category: str,
        reference_id: Optional[str],
        entry_date: date,
    ) -> None:
        self.session.execute(
            insert(ledger_entries).values(
                entry_type=entry_type,
                amount_cents=amount_cents,
                description=description,
                category=category,
                reference_id=reference_id,
                entry_date=entry_date,
            )
        )

    # -- audit --------------------------------------------------------------

    def insert_audit_entry(
        self,
        *,
        actor_id: str,
        action: str,
        entity_table: str,
        entity_id: Optional[str],
        target_user_id: Optional[str],
        details: Optional[Dict[str, Any]],
        created_at: datetime,
    ) -> int:
        result = self.session.execute(
            insert(admin_actions).values(
                actor_id=actor_id,
                action=action,
                entity_table=entity_table,
                entity_id=entity_id,
                target_user_id=target_user_id,
                details=details or {},
                created_at=created_at,
            )
        )
        return int(result.inserted_primary_key[0])

    def list_audit_entries(self, limit: int) -> List[AuditEntry]:
        rows = self.session.execute(
            select(admin_actions, users.c.email.label("actor_email"))
            .select_from(admin_actions.outerjoin(users, admin_actions.c.actor_id == users.c.user_id))
            .order_by(admin_actions.c.created_at.desc(), admin_actions.c.id.desc())
            .limit(limit)
        ).fetchall()
        return [
            AuditEntry(
                id=row.id,
                actor_id=row.actor_id,
                action=row.action,
                entity_table=row.entity_table,
                entity_id=row.entity_id,
                target_user_id=row.target_user_id,
                details=row.details or {},
                created_at=as_utc(row.created_at),
                actor_email=row.actor_email or row.actor_id,
            )
            for row in rows
        ]

    # -- jobs ---------------------------------------------------------------

    def insert_job_run(
        self,
        *,
        job_name: str,
        started_at: datetime,
        finished_at: datetime,
        status: str,
        stats: Dict[str, Any],
    ) -> None:
        self.session.execute(
            insert(job_runs).values(
                job_name=job_name,
                started_at=started_at,
                finished_at=finished_at,
                status=status,
                stats=stats,
            )
        )


@contextmanager
def open_store(operation: str = "payments") -> Iterator[SqlPaymentStore]:
    """
    Open a store bound to one transaction.

    Usage:
        with open_store("webhook") as store:
            store.upsert_entitlement(...)
            store.insert_audit_entry(...)
    """
    with store_call(operation):
        with get_db_session() as session:
            yield SqlPaymentStore(session)
