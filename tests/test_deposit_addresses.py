"""
Deposit Address Registry Tests
Public listing with configured fallback; audited admin upsert keyed by token
"""

from unittest.mock import patch

import pytest
from sqlalchemy import select

from config import Config
from models import AuditLog, DepositAddress
from services.authorization import Actor
from services.deposit_address_service import DepositAddressService
from utils.exception_handler import ForbiddenError, ValidationError


@pytest.fixture
def address_service(session_factory):
    return DepositAddressService(session_factory=session_factory)


class TestListing:

    def test_empty_registry_serves_configured_addresses(self, address_service):
        with patch.object(Config, "DEPOSIT_ADDRESS_BTC", "bc1qenv"), \
                patch.object(Config, "DEPOSIT_ADDRESS_ETH", "0xenv"):
            book = address_service.list_active_addresses()

        assert book.source == "env"
        assert [entry["token"] for entry in book.addresses] == ["BTC", "ETH", "USDT", "USDC"]
        assert book.addresses[0]["address"] == "bc1qenv"
        # USDC is an ERC-20 and shares the Ethereum address
        assert book.addresses[3] == {"token": "USDC", "address": "0xenv", "network": "Ethereum"}

    def test_inactive_rows_hidden(self, address_service, admin_actor):
        address_service.update_addresses(admin_actor, [
            {"token": "ETH", "address": "0xlive", "network": "Ethereum"},
            {"token": "BTC", "address": "bc1qold", "isActive": False},
        ])

        book = address_service.list_active_addresses()

        assert book.source == "database"
        assert [(e["token"], e["address"]) for e in book.addresses] == [("ETH", "0xlive")]


class TestUpdate:

    def test_upsert_by_token(self, address_service, admin_actor, session_factory):
        address_service.update_addresses(admin_actor, [{"token": "usdt", "address": "Tfirst", "network": "Tron"}])
        rows = address_service.update_addresses(admin_actor, [
            {"token": "USDT", "address": "Tsecond", "network": "Tron"},
            {"token": "BTC", "address": "bc1qnew"},
        ])

        assert [(row.token, row.address) for row in rows] == [("BTC", "bc1qnew"), ("USDT", "Tsecond")]
        assert rows[0].network is None
        with session_factory() as session:
            assert len(session.execute(select(DepositAddress)).scalars().all()) == 2

    def test_update_is_audited_in_bulk(self, address_service, admin_actor, session_factory):
        address_service.update_addresses(admin_actor, [{"token": "ETH", "address": "0xaudited"}])

        with session_factory() as session:
            entry = session.execute(select(AuditLog)).scalar_one()

        assert entry.action == "DEPOSIT_ADDRESSES_UPDATE"
        assert entry.entity == "DepositAddress"
        assert entry.entity_id == "bulk"
        assert entry.actor_user_id == admin_actor.user_id
        assert entry.audit_metadata["addresses"][0]["address"] == "0xaudited"

    def test_non_admin_rejected(self, address_service, make_user, audit_actions):
        actor = Actor(user_id=make_user(), role="USER")

        with pytest.raises(ForbiddenError):
            address_service.update_addresses(actor, [{"token": "BTC", "address": "bc1qattacker"}])

        assert audit_actions() == []
        assert address_service.list_active_addresses().source == "env"

    def test_address_format_not_checked(self, address_service, admin_actor):
        rows = address_service.update_addresses(admin_actor, [{"token": "SOL", "address": "any-format at all"}])
        assert rows[0].address == "any-format at all"

    @pytest.mark.parametrize("addresses", [
        None,
        [],
        ["BTC"],
        [{"address": "bc1q"}],
        [{"token": "BTC", "address": "  "}],
        [{"token": "X" * 21, "address": "addr"}],
        [{"token": "BTC", "address": "a" * 256}],
        [{"token": "BTC", "address": "addr", "network": "n" * 51}],
        [{"token": "BTC", "address": "addr", "isActive": "yes"}],
        [{"token": "BTC", "address": "one"}, {"token": "btc", "address": "two"}],
    ])
    def test_invalid_payloads(self, address_service, admin_actor, audit_actions, addresses):
        with pytest.raises(ValidationError):
            address_service.update_addresses(admin_actor, addresses)
        assert audit_actions() == []
