# backend/ledger/services/link_service.py
"""
Link registry: directed edges between postings.

Link types:
    action        - star from the first posting of a composed action to
                    each sibling leg; defines the action group
    stake_unstake - stake deposit -> unstake leg that released it
    borrow_repay  - borrow posting -> repayment

Links are never edited; they disappear with their postings.
"""

import logging
from collections import deque

from sqlalchemy import inspect, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger.models import LinkType, Transaction, TransactionLink
from ledger.services.exceptions import (
    ConsistencyError,
    LinkStorageUnavailableError,
    TransactionNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

LINKS_TABLE = TransactionLink.__tablename__


def coerce_link_type(value: LinkType | str) -> LinkType:
    if isinstance(value, LinkType):
        return value
    try:
        return LinkType(str(value).strip().lower())
    except ValueError as e:
        raise ValidationError(f"unknown link type: {value}", field="link_type") from e


class LinkService:
    """Create and traverse transaction links."""

    def has_link_storage(self, db: Session) -> bool:
        return inspect(db.get_bind()).has_table(LINKS_TABLE)

    def stage_link(
            self,
            db: Session,
            link_type: LinkType | str,
            from_tx: str,
            to_tx: str,
    ) -> TransactionLink:
        """
        Add a link to the caller's transaction without committing.

        The postings may still be pending in the same session, so only the
        ids are checked here; the foreign keys are enforced at flush.
        """
        if not from_tx or not to_tx:
            raise ValidationError("from_tx and to_tx are required", field="from_tx")
        if from_tx == to_tx:
            raise ValidationError("a transaction cannot link to itself", field="to_tx")

        link = TransactionLink(link_type=coerce_link_type(link_type), from_tx=from_tx, to_tx=to_tx)
        db.add(link)
        return link

    def create_link(
            self,
            db: Session,
            link_type: LinkType | str,
            from_tx: str,
            to_tx: str,
    ) -> TransactionLink:
        """
        Persist a link between two stored postings and commit.

        Creating a link that already exists returns the existing one.

        Raises:
            LinkStorageUnavailableError: transaction_links table is missing
            TransactionNotFoundError: either posting does not exist
            ValidationError: bad link type or self-link
        """
        if not self.has_link_storage(db):
            raise LinkStorageUnavailableError()

        kind = coerce_link_type(link_type)
        for tx_id in (from_tx, to_tx):
            if db.get(Transaction, tx_id) is None:
                raise TransactionNotFoundError(tx_id)

        existing = db.scalar(
            select(TransactionLink).where(
                TransactionLink.link_type == kind,
                TransactionLink.from_tx == from_tx,
                TransactionLink.to_tx == to_tx,
            )
        )
        if existing is not None:
            return existing

        link = self.stage_link(db, kind, from_tx, to_tx)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.warning(f"Link {kind.value} {from_tx} -> {to_tx} rejected by the database", exc_info=True)
            raise ConsistencyError(f"link {kind.value} {from_tx} -> {to_tx} could not be stored") from e
        db.refresh(link)

        logger.info(f"Linked {from_tx} -> {to_tx} ({kind.value})")
        return link

    def get_linked(self, db: Session, tx_id: str) -> list[TransactionLink]:
        """All links touching `tx_id` in either direction (empty without link storage)."""
        if not self.has_link_storage(db):
            return []
        return list(
            db.scalars(
                select(TransactionLink)
                .where(or_(TransactionLink.from_tx == tx_id, TransactionLink.to_tx == tx_id))
                .order_by(TransactionLink.id)
            )
        )

    def get_action_group_ids(self, db: Session, tx_id: str) -> list[str]:
        """
        Every posting reachable from `tx_id` through `action` links.

        Walks edges in both directions so any leg of an action finds the
        root and its siblings. An unlinked posting is a group of one.
        """
        if not self.has_link_storage(db):
            return [tx_id]

        seen = {tx_id}
        ordered = [tx_id]
        queue = deque([tx_id])

        while queue:
            current = queue.popleft()
            rows = db.execute(
                select(TransactionLink.from_tx, TransactionLink.to_tx).where(
                    TransactionLink.link_type == LinkType.ACTION,
                    or_(TransactionLink.from_tx == current, TransactionLink.to_tx == current),
                )
            ).all()
            for from_tx, to_tx in rows:
                for neighbour in (from_tx, to_tx):
                    if neighbour not in seen:
                        seen.add(neighbour)
                        ordered.append(neighbour)
                        queue.append(neighbour)

        return ordered

    def get_source_of(self, db: Session, tx_id: str, link_type: LinkType) -> str | None:
        """`from_tx` of the first link of `link_type` pointing at `tx_id`."""
        if not self.has_link_storage(db):
            return None
        return db.scalar(
            select(TransactionLink.from_tx)
            .where(TransactionLink.link_type == link_type, TransactionLink.to_tx == tx_id)
            .order_by(TransactionLink.id)
            .limit(1)
        )
