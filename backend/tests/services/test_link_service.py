# backend/tests/services/test_link_service.py
"""
Tests for the link registry.

Tests cover:
- Creating links between stored postings
- Duplicate and self links
- Action group traversal from any leg
"""

import pytest

from ledger.models import LinkType, PostingType
from ledger.services.exceptions import (
    LinkStorageUnavailableError,
    TransactionNotFoundError,
    ValidationError,
)
from tests.conftest import make_posting


@pytest.fixture
def stored_postings(db, transaction_service):
    """Three unlinked USDT postings."""
    postings = [
        make_posting(PostingType.DEPOSIT, asset="USDT", quantity=str(qty), price_local="1")
        for qty in (10, 20, 30)
    ]
    return transaction_service.create_transactions_batch(db, postings, link_type=None)


class TestCreateLink:

    def test_creates_link(self, db, link_service, stored_postings):
        a, b, _ = stored_postings

        link = link_service.create_link(db, "borrow_repay", a.id, b.id)

        assert link.id is not None
        assert link.link_type == LinkType.BORROW_REPAY
        assert [l.id for l in link_service.get_linked(db, b.id)] == [link.id]

    def test_duplicate_returns_existing(self, db, link_service, stored_postings):
        a, b, _ = stored_postings

        first = link_service.create_link(db, LinkType.ACTION, a.id, b.id)
        second = link_service.create_link(db, LinkType.ACTION, a.id, b.id)

        assert first.id == second.id

    def test_self_link_rejected(self, db, link_service, stored_postings):
        a = stored_postings[0]

        with pytest.raises(ValidationError):
            link_service.create_link(db, LinkType.ACTION, a.id, a.id)

    def test_unknown_posting(self, db, link_service, stored_postings):
        with pytest.raises(TransactionNotFoundError):
            link_service.create_link(db, LinkType.ACTION, stored_postings[0].id, "missing")

    def test_unknown_link_type(self, db, link_service, stored_postings):
        a, b, _ = stored_postings

        with pytest.raises(ValidationError) as exc_info:
            link_service.create_link(db, "sibling", a.id, b.id)

        assert exc_info.value.field == "link_type"

    def test_missing_link_table(self, db, link_service, stored_postings, monkeypatch):
        a, b, _ = stored_postings
        monkeypatch.setattr(link_service, "has_link_storage", lambda session: False)

        with pytest.raises(LinkStorageUnavailableError):
            link_service.create_link(db, LinkType.ACTION, a.id, b.id)
        assert link_service.get_linked(db, a.id) == []
        assert link_service.get_action_group_ids(db, a.id) == [a.id]


class TestActionGroups:

    def test_group_is_found_from_any_leg(self, db, transaction_service, link_service):
        legs = [
            make_posting(PostingType.TRANSFER_OUT, asset="USDT", quantity="5", price_local="1", internal_flow=True),
            make_posting(PostingType.TRANSFER_IN, asset="USDT", quantity="5", price_local="1", internal_flow=True),
            make_posting(PostingType.FEE, asset="USDT", quantity="0.1", price_local="1"),
        ]
        saved = transaction_service.create_transactions_batch(db, legs)
        ids = {tx.id for tx in saved}

        assert set(link_service.get_action_group_ids(db, saved[0].id)) == ids
        assert set(link_service.get_action_group_ids(db, saved[2].id)) == ids

    def test_unlinked_posting_is_group_of_one(self, db, link_service, stored_postings):
        a = stored_postings[0]

        assert link_service.get_action_group_ids(db, a.id) == [a.id]

    def test_other_link_types_do_not_join_groups(self, db, link_service, stored_postings):
        a, b, _ = stored_postings
        link_service.create_link(db, LinkType.STAKE_UNSTAKE, a.id, b.id)

        assert link_service.get_action_group_ids(db, a.id) == [a.id]
        assert link_service.get_source_of(db, b.id, LinkType.STAKE_UNSTAKE) == a.id
