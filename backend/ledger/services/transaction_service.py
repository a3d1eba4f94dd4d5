# backend/ledger/services/transaction_service.py
"""
Transaction store: writes, updates and deletes ledger postings.

Every posting goes through prepare_transaction() before it is persisted:

    1. normalize asset/account strings and the posting type
    2. validate the raw attributes
    3. populate FX:
         - recognized crypto  -> fx_to_usd = fx_to_vnd = 1 (price is USD)
         - zero FX            -> gateway rates asset->USD / asset->VND,
                                 fx_source = "auto-fx-provider"
    4. require non-zero FX
    5. compute derived fields (amounts, delta, cash flow)

Batches are prepared in full before anything is added to the session, so a
single invalid leg persists nothing. Commits follow the same pattern as the
rest of the service layer: rollback, log with exc_info, raise a domain
error.
"""

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import DataError, IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ledger.models import LinkType, PostingType, Transaction, TransactionLink
from ledger.services.constants import (
    FX_SOURCE_AUTO,
    MAX_BATCH_SIZE,
    ONE,
    USD,
    VND,
    ZERO,
    is_cryptocurrency,
)
from ledger.services.derived_fields import (
    apply_derived_fields,
    coerce_posting_type,
    to_decimal,
    validate_posting,
)
from ledger.services.exceptions import (
    ConcurrentModificationError,
    ServiceError,
    TransactionNotFoundError,
    ValidationError,
)
from ledger.services.link_service import LinkService
from ledger.services.protocols import FXRateServiceProtocol

logger = logging.getLogger(__name__)

# Fields a caller may change through update_transaction()
UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "date", "type", "asset", "account", "counterparty", "tag", "note",
    "quantity", "price_local", "fx_to_usd", "fx_to_vnd", "fee_usd", "fee_vnd",
    "internal_flow", "horizon", "entry_date", "exit_date",
    "borrow_apr", "borrow_term_days", "borrow_active",
})

# Nullable columns; an explicit None in an update clears them
CLEARABLE_FIELDS: frozenset[str] = frozenset({
    "counterparty", "tag", "note", "horizon", "entry_date", "exit_date",
    "borrow_apr", "borrow_term_days", "borrow_active",
})

# Changing any of these invalidates automatically populated FX
_FX_INPUT_FIELDS = frozenset({"asset", "date"})

StagedHook = Callable[[Session, list[Transaction]], None]


def commit_or_raise(db: Session, operation: str) -> None:
    """
    Commit the session, translating database failures into domain errors.

    The session is rolled back before anything is raised.
    """
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"{operation}: concurrent modification detected: {e}")
        raise ConcurrentModificationError(operation) from e
    except IntegrityError as e:
        db.rollback()
        logger.error(f"{operation} integrity error: {e}", exc_info=True)
        raise ValidationError(
            "Data integrity error: a posting violates database constraints"
        ) from e
    except DataError as e:
        db.rollback()
        logger.error(f"{operation} data error: {e}", exc_info=True)
        raise ValidationError(
            "Invalid data: one or more values are out of acceptable range or format"
        ) from e
    except OperationalError as e:
        db.rollback()
        logger.error(f"{operation} operational error: {e}", exc_info=True)
        raise ServiceError("Database temporarily unavailable. Please try again shortly.") from e


class TransactionService:
    """
    Single and batch posting writes with FX population and derivation.

    Attributes:
        _fx_service: Gateway used to fill zero FX rates (None = FX required)
        _link_service: Registry used for action links
        _credit_card_account: Account whose expenses have no cash flow
    """

    def __init__(
            self,
            fx_service: FXRateServiceProtocol | None = None,
            link_service: LinkService | None = None,
            credit_card_account: str | None = None,
    ) -> None:
        self._fx_service = fx_service
        self._link_service = link_service or LinkService()
        self._credit_card_account = credit_card_account

    # =========================================================================
    # PREPARATION
    # =========================================================================

    def prepare_transaction(self, db: Session, tx: Transaction) -> Transaction:
        """
        Normalize, validate, populate FX and derive fields in place.

        May read (and cache) gateway rates through `db`; adds nothing else.

        Raises:
            ValidationError: Invalid raw attributes or FX still missing
            UpstreamUnavailableError: Gateway could not supply a missing rate
        """
        tx.asset = (tx.asset or "").strip().upper()
        tx.account = (tx.account or "").strip()
        tx.type = coerce_posting_type(tx.type)
        for field in ("quantity", "price_local", "fx_to_usd", "fx_to_vnd", "fee_usd", "fee_vnd"):
            setattr(tx, field, to_decimal(getattr(tx, field), field))
        if tx.internal_flow is None:
            tx.internal_flow = False

        validate_posting(tx)
        self.populate_fx(db, tx)

        if not is_cryptocurrency(tx.asset):
            if tx.fx_to_usd == ZERO:
                raise ValidationError(f"fx_to_usd is required for {tx.asset}", field="fx_to_usd")
            if tx.fx_to_vnd == ZERO:
                raise ValidationError(f"fx_to_vnd is required for {tx.asset}", field="fx_to_vnd")

        return apply_derived_fields(tx, self._credit_card_account)

    def populate_fx(self, db: Session, tx: Transaction) -> Transaction:
        """Fill FX rates that are zero; force 1/1 for crypto."""
        if is_cryptocurrency(tx.asset):
            tx.fx_to_usd = ONE
            tx.fx_to_vnd = ONE
            return tx

        missing = [
            ccy for ccy, rate in ((USD, tx.fx_to_usd), (VND, tx.fx_to_vnd))
            if rate is None or rate == ZERO
        ]
        if not missing or self._fx_service is None:
            return tx

        rates = self._fx_service.get_rates(db, tx.asset, missing, tx.date)
        if USD in rates:
            tx.fx_to_usd = rates[USD].rate
        if VND in rates:
            tx.fx_to_vnd = rates[VND].rate
        tx.fx_source = FX_SOURCE_AUTO
        tx.fx_timestamp = datetime.now(timezone.utc)

        logger.debug(f"Populated {'/'.join(missing)} FX for {tx.asset} on {tx.date}")
        return tx

    # =========================================================================
    # CREATE
    # =========================================================================

    def create_transaction(self, db: Session, tx: Transaction) -> Transaction:
        try:
            self.prepare_transaction(db, tx)
        except ServiceError:
            db.rollback()
            raise
        db.add(tx)
        commit_or_raise(db, "Create transaction")
        db.refresh(tx)

        logger.info(f"Created {tx.type.value} {tx.quantity} {tx.asset} in {tx.account} ({tx.id})")
        return tx

    def stage_transactions(
            self,
            db: Session,
            txs: Sequence[Transaction],
            link_type: LinkType | None = LinkType.ACTION,
    ) -> list[Transaction]:
        """
        Add prepared postings (and star links from the first one) to the
        session without committing.
        """
        staged = list(txs)
        for tx in staged:
            if not tx.id:
                tx.id = str(uuid.uuid4())
        db.add_all(staged)

        if link_type is not None and len(staged) > 1:
            root = staged[0]
            for leaf in staged[1:]:
                self._link_service.stage_link(db, link_type, root.id, leaf.id)

        db.flush()
        return staged

    def create_transactions_batch(
            self,
            db: Session,
            txs: Sequence[Transaction],
            link_type: LinkType | None = LinkType.ACTION,
            on_staged: StagedHook | None = None,
    ) -> list[Transaction]:
        """
        Persist postings atomically: all of them or none.

        Args:
            txs: Unsaved postings; the first becomes the link root
            link_type: Link type for the star, or None for no links
            on_staged: Called after the postings are flushed and before the
                       commit (used to apply stake/unstake legs to lots in
                       the same transaction)

        Raises:
            ValidationError: Empty/oversized batch or an invalid posting
            Any error raised by on_staged (after rollback)
        """
        if not txs:
            raise ValidationError("at least one transaction is required", field="transactions")
        if len(txs) > MAX_BATCH_SIZE:
            raise ValidationError(
                f"batch of {len(txs)} exceeds the limit of {MAX_BATCH_SIZE}",
                field="transactions",
            )

        # Prepare everything first: a bad leg must not leave earlier legs behind
        for index, tx in enumerate(txs):
            try:
                self.prepare_transaction(db, tx)
            except ValidationError as e:
                db.rollback()
                raise ValidationError(f"transaction {index}: {e.message}", field=e.field) from e
            except ServiceError:
                db.rollback()
                raise

        try:
            staged = self.stage_transactions(db, txs, link_type)
            if on_staged is not None:
                on_staged(db, staged)
        except StaleDataError as e:
            db.rollback()
            raise ConcurrentModificationError("Investment") from e
        except Exception:
            db.rollback()
            raise

        commit_or_raise(db, "Batch transaction")
        for tx in staged:
            db.refresh(tx)

        logger.info(
            f"Created batch of {len(staged)} postings (root={staged[0].id}, "
            f"link={link_type.value if link_type else 'none'})"
        )
        return staged

    # =========================================================================
    # READ
    # =========================================================================

    def get_transaction(self, db: Session, transaction_id: str) -> Transaction:
        tx = db.get(Transaction, transaction_id)
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return tx

    def list_transactions(
            self,
            db: Session,
            *,
            account: str | None = None,
            asset: str | None = None,
            posting_type: PostingType | str | None = None,
            tag: str | None = None,
            investment_id: str | None = None,
            start_date: datetime | None = None,
            end_date: datetime | None = None,
            limit: int = 100,
            offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """Filtered postings, newest first, plus the unpaginated total."""
        query = select(Transaction)

        if account:
            query = query.where(Transaction.account == account)
        if asset:
            query = query.where(Transaction.asset == asset.strip().upper())
        if posting_type:
            query = query.where(Transaction.type == coerce_posting_type(posting_type))
        if tag:
            query = query.where(Transaction.tag == tag)
        if investment_id:
            query = query.where(Transaction.investment_id == investment_id)
        if start_date:
            query = query.where(Transaction.date >= start_date)
        if end_date:
            query = query.where(Transaction.date <= end_date)

        total = db.scalar(select(func.count()).select_from(query.subquery())) or 0
        items = db.scalars(
            query.order_by(Transaction.date.desc(), Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return list(items), total

    # =========================================================================
    # UPDATE
    # =========================================================================

    def update_transaction(self, db: Session, transaction_id: str, changes: dict[str, Any]) -> Transaction:
        """
        Merge `changes` into the stored posting and re-derive.

        None clears a nullable field (CLEARABLE_FIELDS) and is ignored for
        the rest.

        Automatically populated FX is refreshed when asset or date change
        and the caller did not supply new rates.

        Raises:
            TransactionNotFoundError: Unknown id
            ValidationError: Unknown field or invalid merged posting
        """
        tx = self.get_transaction(db, transaction_id)

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"cannot update field(s): {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        applied = {
            key: value for key, value in changes.items()
            if value is not None or key in CLEARABLE_FIELDS
        }
        for key, value in applied.items():
            setattr(tx, key, value)

        if (
            tx.fx_source == FX_SOURCE_AUTO
            and _FX_INPUT_FIELDS & applied.keys()
            and not {"fx_to_usd", "fx_to_vnd"} & applied.keys()
        ):
            tx.fx_to_usd = ZERO
            tx.fx_to_vnd = ZERO

        try:
            self.prepare_transaction(db, tx)
        except ServiceError:
            db.rollback()
            raise

        commit_or_raise(db, "Update transaction")
        db.refresh(tx)

        logger.info(f"Updated transaction {transaction_id}: {sorted(applied)}")
        return tx

    # =========================================================================
    # DELETE
    # =========================================================================

    def delete_transaction(self, db: Session, transaction_id: str) -> None:
        """
        Delete one posting and its links.

        If the posting released a stake (target of a stake_unstake link),
        the stake deposit's exit_date is cleared first.
        """
        self.get_transaction(db, transaction_id)
        self._delete_postings(db, [transaction_id])
        commit_or_raise(db, "Delete transaction")
        logger.info(f"Deleted transaction {transaction_id}")

    def delete_action_group(self, db: Session, transaction_id: str) -> list[str]:
        """
        Delete every posting connected to `transaction_id` by action links.

        Returns:
            Ids of the deleted postings (just `transaction_id` when unlinked)
        """
        self.get_transaction(db, transaction_id)
        ids = self._link_service.get_action_group_ids(db, transaction_id)

        self._delete_postings(db, ids)
        commit_or_raise(db, "Delete action group")

        logger.info(f"Deleted action group of {transaction_id}: {len(ids)} postings")
        return ids

    def _delete_postings(self, db: Session, ids: list[str]) -> None:
        has_links = self._link_service.has_link_storage(db)

        if has_links:
            for tx_id in ids:
                deposit_id = self._link_service.get_source_of(db, tx_id, LinkType.STAKE_UNSTAKE)
                if deposit_id and deposit_id not in ids:
                    deposit = db.get(Transaction, deposit_id)
                    if deposit is not None and deposit.exit_date is not None:
                        deposit.exit_date = None
                        logger.info(f"Cleared exit_date of stake deposit {deposit_id}")

            db.execute(
                delete(TransactionLink).where(
                    or_(TransactionLink.from_tx.in_(ids), TransactionLink.to_tx.in_(ids))
                )
            )

        for tx_id in ids:
            tx = db.get(Transaction, tx_id)
            if tx is not None:
                db.delete(tx)
        db.flush()
