"""
Tests for tenant isolation in the storage layer
"""

import pytest

from loan_servicing.exceptions import InvalidInputError
from loan_servicing.storage import InMemoryStorage
from loan_servicing.tenancy import (
    TenantScopedStorage, TenantStorageFactory, extract_tenant_from_header,
    storage_key, validate_tenant_id
)


class TestTenantIdValidation:

    @pytest.mark.parametrize("tenant_id", ["acme", "bank-1", "Tenant_2.eu"])
    def test_valid(self, tenant_id):
        assert validate_tenant_id(tenant_id) == tenant_id

    @pytest.mark.parametrize("tenant_id", ["", None, "a/b", "../etc", "-leading", "x" * 65, "white space"])
    def test_invalid(self, tenant_id):
        with pytest.raises(InvalidInputError):
            validate_tenant_id(tenant_id)

    def test_header_extraction(self):
        assert extract_tenant_from_header({"x-tenant-id": "acme"}) == "acme"
        assert extract_tenant_from_header({"X-Tenant-ID": "acme"}) == "acme"
        assert extract_tenant_from_header({}) is None


class TestTenantScopedStorage:
    """Two tenants sharing one backend must never see each other's rows"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.factory = TenantStorageFactory(self.storage)
        self.acme = self.factory.for_tenant("acme")
        self.globex = self.factory.for_tenant("globex")

    def test_same_id_in_two_tenants(self):
        self.acme.save("loans", "L1", {"id": "L1", "principal": "100.00"})
        self.globex.save("loans", "L1", {"id": "L1", "principal": "900.00"})

        assert self.acme.load("loans", "L1")["principal"] == "100.00"
        assert self.globex.load("loans", "L1")["principal"] == "900.00"
        assert self.storage.count("loans") == 2

    def test_records_are_stamped_and_namespaced(self):
        self.acme.save("loans", "L1", {"id": "L1"})
        raw = self.storage.load("loans", storage_key("acme", "L1"))
        assert raw["tenant_id"] == "acme"
        assert self.storage.load("loans", "L1") is None

    def test_stamp_overrides_caller_tenant_field(self):
        self.acme.save("loans", "L1", {"id": "L1", "tenant_id": "globex"})
        assert self.acme.load("loans", "L1")["tenant_id"] == "acme"
        assert self.globex.load("loans", "L1") is None

    def test_find_and_load_all_are_filtered(self):
        self.acme.save("loans", "L1", {"id": "L1", "status": "pending"})
        self.acme.save("loans", "L2", {"id": "L2", "status": "disbursed"})
        self.globex.save("loans", "L3", {"id": "L3", "status": "pending"})

        assert {r["id"] for r in self.acme.load_all("loans")} == {"L1", "L2"}
        assert [r["id"] for r in self.globex.find("loans", {"status": "pending"})] == ["L3"]
        assert self.acme.count("loans") == 2

    def test_delete_only_own_rows(self):
        self.acme.save("loans", "L1", {"id": "L1"})
        self.globex.save("loans", "L1", {"id": "L1"})

        assert self.globex.delete("loans", "L1") is True
        assert self.acme.exists("loans", "L1")
        assert self.globex.delete("loans", "L1") is False

    def test_clear_table_only_own_rows(self):
        self.acme.save("loans", "L1", {"id": "L1"})
        self.globex.save("loans", "L2", {"id": "L2"})
        self.acme.clear_table("loans")

        assert self.acme.count("loans") == 0
        assert self.globex.count("loans") == 1

    def test_views_share_the_inner_transaction(self):
        with pytest.raises(RuntimeError):
            with self.acme.atomic():
                self.acme.save("loans", "L1", {"id": "L1"})
                self.globex.save("loans", "L2", {"id": "L2"})
                assert self.globex.in_transaction()
                raise RuntimeError("abort")

        assert not self.acme.exists("loans", "L1")
        assert not self.globex.exists("loans", "L2")

    def test_invalid_tenant_rejected(self):
        with pytest.raises(InvalidInputError):
            TenantScopedStorage(self.storage, "a/b")

    def test_tenant_ids(self):
        self.globex.save("loans", "L1", {"id": "L1"})
        self.acme.save("loans", "L2", {"id": "L2"})
        self.acme.save("loans", "L3", {"id": "L3"})
        assert self.factory.tenant_ids("loans") == ["acme", "globex"]
