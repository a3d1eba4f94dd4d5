# backend/ledger/services/investment_service.py
"""
Investment ledger: cost-basis lots per (asset, account, horizon).

=============================================================================
COST BASIS
=============================================================================

Weighted-average remaining cost. A lot tracks the cost still attached to
the quantity it holds (remaining_cost). Each withdrawal consumes a share of
it proportional to the quantity taken:

    consumed      = remaining_cost × qty ÷ remaining_qty
    realized_pnl += proceeds − consumed
    pnl_percent   = realized_pnl ÷ (deposit_cost − remaining_cost) × 100

Example: deposit 500 @ 1.00, withdraw 275 @ 1.00, then 225 @ 1.20
    after #1: consumed 275, pnl 0,  remaining 225 (cost 225), open
    after #2: consumed 225, pnl 45, remaining 0,  pnl_percent 9, closed

Deposits into an open lot with the same horizon augment it:
    deposit_unit_cost = deposit_cost ÷ deposit_qty (weighted average)

=============================================================================
TRANSACTIONS
=============================================================================

apply_stake / apply_unstake join the caller's transaction (the action
composer applies stake/unstake legs while its batch is staged). The
create_* / process_* methods own their transaction: posting and lot are
committed together. Lots are read FOR UPDATE and carry a version column;
a stale write surfaces as ConcurrentModificationError.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger.models import Investment, PostingType, Transaction
from ledger.services.constants import AMOUNT_PRECISION, HUNDRED, ZERO
from ledger.services.derived_fields import coerce_posting_type
from ledger.services.exceptions import (
    InsufficientBalanceError,
    InvestmentNotFoundError,
    NotFoundError,
    ValidationError,
)
from ledger.services.transaction_service import TransactionService, commit_or_raise

logger = logging.getLogger(__name__)

DEPOSIT_TYPES: frozenset[PostingType] = frozenset({PostingType.DEPOSIT, PostingType.STAKE, PostingType.BUY})
WITHDRAWAL_TYPES: frozenset[PostingType] = frozenset({PostingType.WITHDRAW, PostingType.UNSTAKE, PostingType.SELL})


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class InvestmentFilter:
    asset: str | None = None
    account: str | None = None
    horizon: str | None = None
    is_open: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int | None = 100
    offset: int = 0


@dataclass
class InvestmentSummary:
    total_investments: int = 0
    open_investments: int = 0
    closed_investments: int = 0
    total_deposit_cost: Decimal = ZERO
    total_withdrawal_value: Decimal = ZERO
    open_cost_basis: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    roi_percent: Decimal = ZERO
    assets: list[str] = field(default_factory=list)


# =============================================================================
# LOT ARITHMETIC
# =============================================================================

def _quantize(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_PRECISION)


def add_deposit(lot: Investment, qty: Decimal, cost: Decimal) -> None:
    """Augment a lot; unit cost becomes the weighted average."""
    lot.deposit_qty = (lot.deposit_qty or ZERO) + qty
    lot.deposit_cost = (lot.deposit_cost or ZERO) + cost
    lot.remaining_cost = (lot.remaining_cost or ZERO) + cost
    if lot.deposit_qty > ZERO:
        lot.deposit_unit_cost = _quantize(lot.deposit_cost / lot.deposit_qty)


def add_withdrawal(lot: Investment, qty: Decimal, proceeds: Decimal, when: datetime) -> Decimal:
    """
    Take `qty` out of a lot and realize PnL against its remaining cost.

    Returns:
        The cost basis consumed by this withdrawal

    Raises:
        ValidationError: qty is not positive
        InsufficientBalanceError: qty exceeds the remaining quantity
    """
    if qty <= ZERO:
        raise ValidationError("withdrawal quantity must be positive", field="quantity")

    remaining_qty = lot.remaining_qty
    if qty > remaining_qty:
        raise InsufficientBalanceError(
            f"Cannot withdraw {qty} {lot.asset} from investment {lot.id}: only {remaining_qty} remaining",
            available=remaining_qty,
            requested=qty,
        )

    remaining_cost = lot.remaining_cost or ZERO
    if qty == remaining_qty:
        consumed = remaining_cost
    else:
        consumed = _quantize(remaining_cost * qty / remaining_qty)

    lot.withdrawal_qty = (lot.withdrawal_qty or ZERO) + qty
    lot.withdrawal_value = (lot.withdrawal_value or ZERO) + proceeds
    lot.withdrawal_unit_price = _quantize(lot.withdrawal_value / lot.withdrawal_qty)
    lot.withdrawal_date = when
    lot.remaining_cost = remaining_cost - consumed
    lot.realized_pnl = (lot.realized_pnl or ZERO) + proceeds - consumed

    total_consumed = lot.deposit_cost - lot.remaining_cost
    lot.pnl_percent = (
        _quantize(lot.realized_pnl / total_consumed * HUNDRED) if total_consumed > ZERO else ZERO
    )

    if lot.remaining_qty <= ZERO:
        lot.is_open = False

    return consumed


# =============================================================================
# INVESTMENT SERVICE
# =============================================================================

class InvestmentService:
    """
    Lot bookkeeping for deposits/stakes and withdrawals/unstakes.

    Attributes:
        _transaction_service: Prepares and persists the postings that move lots
    """

    def __init__(self, transaction_service: TransactionService) -> None:
        self._transaction_service = transaction_service

    # =========================================================================
    # LOT LOOKUP
    # =========================================================================

    def find_open_lot(
            self,
            db: Session,
            asset: str,
            account: str,
            horizon: str | None = None,
            for_update: bool = False,
    ) -> Investment | None:
        """Oldest open lot for (asset, account) whose horizon matches exactly (None matches None)."""
        query = select(Investment).where(
            Investment.asset == asset.strip().upper(),
            Investment.account == account.strip(),
            Investment.is_open.is_(True),
            Investment.horizon.is_(None) if horizon is None else Investment.horizon == horizon,
        ).order_by(Investment.deposit_date, Investment.created_at).limit(1)

        if for_update:
            query = query.with_for_update()
        return db.scalar(query)

    def get_available_deposits(self, db: Session, asset: str, account: str) -> list[Investment]:
        """Open lots for (asset, account), any horizon, oldest first."""
        return list(
            db.scalars(
                select(Investment)
                .where(
                    Investment.asset == asset.strip().upper(),
                    Investment.account == account.strip(),
                    Investment.is_open.is_(True),
                )
                .order_by(Investment.deposit_date, Investment.created_at)
            )
        )

    @staticmethod
    def unit_cost(lot: Investment) -> Decimal:
        """Cost per unit still held (falls back to the deposit unit cost)."""
        remaining_qty = lot.remaining_qty
        if remaining_qty > ZERO and lot.remaining_cost:
            return _quantize(lot.remaining_cost / remaining_qty)
        return lot.deposit_unit_cost or ZERO

    def _lock_lot(self, db: Session, investment_id: str) -> Investment:
        lot = db.scalar(select(Investment).where(Investment.id == investment_id).with_for_update())
        if lot is None:
            raise InvestmentNotFoundError(investment_id)
        return lot

    # =========================================================================
    # CALLER-OWNED TRANSACTION
    # =========================================================================

    def apply_stake(self, db: Session, posting: Transaction) -> Investment:
        """
        Add a prepared deposit/stake/buy posting to its lot (flush, no commit).

        The posting's amount_usd is the cost added to the lot.
        """
        posting_type = coerce_posting_type(posting.type)
        if posting_type not in DEPOSIT_TYPES:
            raise ValidationError(
                f"transaction type must be deposit, stake or buy, got {posting_type.value}",
                field="type",
            )

        if posting.investment_id:
            lot = self._lock_lot(db, posting.investment_id)
        else:
            lot = self.find_open_lot(db, posting.asset, posting.account, posting.horizon, for_update=True)

        cost = posting.amount_usd or ZERO
        if lot is None:
            lot = Investment(
                id=str(uuid.uuid4()),
                asset=posting.asset,
                account=posting.account,
                horizon=posting.horizon,
                deposit_date=posting.date,
                deposit_qty=ZERO,
                deposit_cost=ZERO,
                remaining_cost=ZERO,
                withdrawal_qty=ZERO,
                withdrawal_value=ZERO,
                realized_pnl=ZERO,
                pnl_percent=ZERO,
                is_open=True,
            )
            db.add(lot)
            logger.info(f"Opened investment {lot.id} for {lot.asset} in {lot.account} (horizon={lot.horizon})")

        add_deposit(lot, posting.quantity, cost)
        posting.investment_id = lot.id
        db.flush()

        logger.debug(
            f"Investment {lot.id}: +{posting.quantity} @ cost {cost}, "
            f"qty={lot.deposit_qty}, unit_cost={lot.deposit_unit_cost}"
        )
        return lot

    def apply_unstake(
            self,
            db: Session,
            posting: Transaction,
            investment_id: str | None = None,
    ) -> Investment:
        """
        Take a prepared withdraw/unstake/sell posting out of a lot (flush, no commit).

        Lot choice: explicit id (argument or posting.investment_id), else the
        oldest open lot for (asset, account). The posting's amount_usd is the
        proceeds.

        Raises:
            InvestmentNotFoundError: Explicit lot id unknown
            NotFoundError: No open lot for (asset, account)
            InsufficientBalanceError: Quantity exceeds the lot's remaining quantity
        """
        posting_type = coerce_posting_type(posting.type)
        if posting_type not in WITHDRAWAL_TYPES:
            raise ValidationError(
                f"transaction type must be withdraw, unstake or sell, got {posting_type.value}",
                field="type",
            )

        target_id = investment_id or posting.investment_id
        if target_id:
            lot = self._lock_lot(db, target_id)
        else:
            lot = db.scalar(
                select(Investment)
                .where(
                    Investment.asset == posting.asset,
                    Investment.account == posting.account,
                    Investment.is_open.is_(True),
                )
                .order_by(Investment.deposit_date, Investment.created_at)
                .limit(1)
                .with_for_update()
            )
            if lot is None:
                raise NotFoundError(
                    f"No open investment found for {posting.asset} in {posting.account}",
                    resource_type="Investment",
                )

        if not lot.is_open:
            raise InsufficientBalanceError(
                f"Investment {lot.id} is closed",
                available=ZERO,
                requested=posting.quantity,
            )

        consumed = add_withdrawal(lot, posting.quantity, posting.amount_usd or ZERO, posting.date)
        posting.investment_id = lot.id
        db.flush()

        logger.info(
            f"Investment {lot.id}: -{posting.quantity} {lot.asset}, consumed cost {consumed}, "
            f"realized_pnl={lot.realized_pnl}, open={lot.is_open}"
        )
        return lot

    # =========================================================================
    # SELF-COMMITTING OPERATIONS
    # =========================================================================

    def create_deposit(self, db: Session, posting: Transaction) -> Investment:
        """Persist a deposit/stake/buy posting and its lot update together."""
        lots: list[Investment] = []
        self._transaction_service.create_transactions_batch(
            db,
            [posting],
            link_type=None,
            on_staged=lambda session, staged: lots.append(self.apply_stake(session, staged[0])),
        )
        db.refresh(lots[0])
        return lots[0]

    def create_withdrawal(self, db: Session, posting: Transaction) -> Investment:
        """Persist a withdraw/unstake/sell posting and its lot update together."""
        lots: list[Investment] = []
        self._transaction_service.create_transactions_batch(
            db,
            [posting],
            link_type=None,
            on_staged=lambda session, staged: lots.append(self.apply_unstake(session, staged[0])),
        )
        db.refresh(lots[0])
        return lots[0]

    def process_stake(self, db: Session, posting: Transaction) -> Investment:
        if coerce_posting_type(posting.type) != PostingType.STAKE:
            raise ValidationError(f"transaction type must be 'stake', got {posting.type}", field="type")
        return self.create_deposit(db, posting)

    def process_unstake(self, db: Session, posting: Transaction) -> Investment:
        if coerce_posting_type(posting.type) != PostingType.UNSTAKE:
            raise ValidationError(f"transaction type must be 'unstake', got {posting.type}", field="type")
        return self.create_withdrawal(db, posting)

    # =========================================================================
    # READ VIEWS
    # =========================================================================

    def get_investment(self, db: Session, investment_id: str) -> Investment:
        lot = db.get(Investment, investment_id)
        if lot is None:
            raise InvestmentNotFoundError(investment_id)
        return lot

    def get_investments(self, db: Session, filters: InvestmentFilter | None = None) -> list[Investment]:
        f = filters or InvestmentFilter()
        query = select(Investment)

        if f.asset:
            query = query.where(Investment.asset == f.asset.strip().upper())
        if f.account:
            query = query.where(Investment.account == f.account)
        if f.horizon:
            query = query.where(Investment.horizon == f.horizon)
        if f.is_open is not None:
            query = query.where(Investment.is_open.is_(f.is_open))
        if f.start_date:
            query = query.where(Investment.deposit_date >= f.start_date)
        if f.end_date:
            query = query.where(Investment.deposit_date <= f.end_date)

        return list(
            db.scalars(
                query.order_by(Investment.deposit_date.desc()).limit(f.limit).offset(f.offset)
            )
        )

    def get_investment_summary(self, db: Session, filters: InvestmentFilter | None = None) -> InvestmentSummary:
        """Aggregate counts, cost and realized PnL over the filtered lots."""
        f = filters or InvestmentFilter()
        unpaginated = InvestmentFilter(
            asset=f.asset,
            account=f.account,
            horizon=f.horizon,
            is_open=f.is_open,
            start_date=f.start_date,
            end_date=f.end_date,
            limit=None,
            offset=0,
        )
        lots = self.get_investments(db, unpaginated)

        summary = InvestmentSummary(total_investments=len(lots))
        consumed_total = ZERO
        for lot in lots:
            if lot.is_open:
                summary.open_investments += 1
                summary.open_cost_basis += lot.remaining_cost
            else:
                summary.closed_investments += 1
            summary.total_deposit_cost += lot.deposit_cost
            summary.total_withdrawal_value += lot.withdrawal_value
            summary.realized_pnl += lot.realized_pnl
            consumed_total += lot.deposit_cost - lot.remaining_cost

        if consumed_total > ZERO:
            summary.roi_percent = _quantize(summary.realized_pnl / consumed_total * HUNDRED)
        summary.assets = sorted({lot.asset for lot in lots})
        return summary

    def get_transactions_for_investment(self, db: Session, investment_id: str) -> list[Transaction]:
        self.get_investment(db, investment_id)
        return list(
            db.scalars(
                select(Transaction)
                .where(Transaction.investment_id == investment_id)
                .order_by(Transaction.date, Transaction.created_at)
            )
        )

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    def close_investment(self, db: Session, investment_id: str) -> Investment:
        """Mark a lot closed; a closed lot is returned unchanged."""
        lot = self._lock_lot(db, investment_id)
        if not lot.is_open:
            return lot

        lot.is_open = False
        if lot.withdrawal_date is None:
            lot.withdrawal_date = datetime.now(timezone.utc)
        commit_or_raise(db, "Close investment")
        db.refresh(lot)

        logger.info(f"Closed investment {investment_id} (realized_pnl={lot.realized_pnl})")
        return lot

    def delete_investment(self, db: Session, investment_id: str) -> None:
        """Detach the lot's postings, then delete the lot."""
        lot = self._lock_lot(db, investment_id)

        postings = db.scalars(select(Transaction).where(Transaction.investment_id == investment_id)).all()
        for posting in postings:
            posting.investment_id = None
        db.delete(lot)
        commit_or_raise(db, "Delete investment")

        logger.info(f"Deleted investment {investment_id} ({len(postings)} postings unlinked)")
