"""
Multi-Tenancy Support Module

Every loan, schedule entry, payment event and customer profile belongs to
exactly one tenant (a lending organisation). Tenant isolation is enforced in
the storage layer: engine components only ever talk to a TenantScopedStorage
bound to the caller's tenant, which cannot address another tenant's rows.

The tenant id is always passed explicitly; there is no ambient tenant context.
"""

import re
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional

from .exceptions import InvalidInputError
from .storage import StorageInterface

TENANT_HEADER = "X-Tenant-ID"
TENANT_FIELD = "tenant_id"

_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


def validate_tenant_id(tenant_id: Optional[str]) -> str:
    """Return the tenant id unchanged, or raise InvalidInputError"""
    if not tenant_id or not isinstance(tenant_id, str) or not _TENANT_ID_PATTERN.match(tenant_id):
        raise InvalidInputError(f"Invalid tenant id: {tenant_id!r}", {"field": TENANT_FIELD})
    return tenant_id


def extract_tenant_from_header(headers: Mapping[str, str]) -> Optional[str]:
    """Extract tenant ID from X-Tenant-ID header"""
    return headers.get('x-tenant-id') or headers.get(TENANT_HEADER)


def storage_key(tenant_id: str, record_id: str) -> str:
    """Physical key of a tenant's record in a shared table"""
    return f"{tenant_id}/{record_id}"


class TenantScopedStorage(StorageInterface):
    """
    Storage view bound to a single tenant.

    Record ids are namespaced per tenant in the shared tables, every saved
    record is stamped with ``tenant_id``, and every read filters on it.
    Transactions are delegated to the shared inner storage so scoped views
    and the raw storage join the same ``atomic()`` block.
    """

    def __init__(self, inner_storage: StorageInterface, tenant_id: str):
        super().__init__()
        self.inner = inner_storage
        self.tenant_id = validate_tenant_id(tenant_id)

    def _key(self, record_id: str) -> str:
        return storage_key(self.tenant_id, record_id)

    def _check_tenant_access(self, data: Optional[Dict[str, Any]]) -> bool:
        return data is not None and data.get(TENANT_FIELD) == self.tenant_id

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record stamped with this view's tenant"""
        tenant_data = dict(data)
        tenant_data[TENANT_FIELD] = self.tenant_id
        self.inner.save(table, self._key(record_id), tenant_data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        result = self.inner.load(table, self._key(record_id))
        if not self._check_tenant_access(result):
            return None
        return result

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.inner.find(table, {TENANT_FIELD: self.tenant_id})

    def delete(self, table: str, record_id: str) -> bool:
        if not self.exists(table, record_id):
            return False
        return self.inner.delete(table, self._key(record_id))

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        tenant_filters = dict(filters)
        tenant_filters[TENANT_FIELD] = self.tenant_id
        return self.inner.find(table, tenant_filters)

    def count(self, table: str) -> int:
        return len(self.load_all(table))

    def clear_table(self, table: str) -> None:
        """Remove this tenant's rows only"""
        with self.inner.atomic():
            for record in self.load_all(table):
                self.inner.delete(table, self._key(record['id']))

    def close(self) -> None:
        """The inner storage is shared; closing a view is a no-op"""
        pass

    def in_transaction(self) -> bool:
        return self.inner.in_transaction()

    @contextmanager
    def atomic(self):
        with self.inner.atomic():
            yield


class TenantStorageFactory:
    """Hands out tenant-scoped views over one shared storage backend"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def for_tenant(self, tenant_id: str) -> TenantScopedStorage:
        return TenantScopedStorage(self.storage, tenant_id)

    def tenant_ids(self, table: str) -> List[str]:
        """Distinct tenant ids that own at least one row of ``table``"""
        seen = []
        for record in self.storage.load_all(table):
            tenant_id = record.get(TENANT_FIELD)
            if tenant_id and tenant_id not in seen:
                seen.append(tenant_id)
        return sorted(seen)
