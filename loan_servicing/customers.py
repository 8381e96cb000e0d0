"""
Customer Directory

Borrower profiles are owned by the host's customer service; the engine only
reads them (tenure for credit scoring). ``upsert_customer`` is the hook the
host uses to keep the directory in sync.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from .events import EventDispatcher, EventPayload, ServicingEvent
from .exceptions import CustomerNotFound, InvalidInputError
from .storage import StorageRecord, utc_now
from .tenancy import TenantStorageFactory


@dataclass
class CustomerProfile(StorageRecord):
    """Read model of a borrower"""
    tenant_id: str
    name: str
    joined_on: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CustomerProfile':
        data = dict(data)
        if data.get('joined_on'):
            data['joined_on'] = date.fromisoformat(data['joined_on'])
        return super().from_dict(data)


class CustomerDirectory:

    def __init__(self, tenants: TenantStorageFactory, dispatcher: EventDispatcher):
        self.tenants = tenants
        self.dispatcher = dispatcher
        self.customers_table = "customers"

    def upsert_customer(self, tenant_id: str, customer_id: str, name: str,
                        joined_on: Optional[date] = None) -> CustomerProfile:
        if not customer_id or not customer_id.strip():
            raise InvalidInputError("customer_id is required", {"field": "customer_id"})
        if joined_on is not None and joined_on > date.today():
            raise InvalidInputError("joined_on cannot be in the future", {"field": "joined_on"})

        storage = self.tenants.for_tenant(tenant_id)
        now = utc_now()
        existing = self.find_customer(tenant_id, customer_id)
        profile = CustomerProfile(
            id=customer_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            tenant_id=tenant_id,
            name=name,
            joined_on=joined_on,
        )
        storage.save(self.customers_table, profile.id, profile.to_dict())
        self.dispatcher.publish(EventPayload(
            event_type=ServicingEvent.CUSTOMER_UPDATED,
            tenant_id=tenant_id,
            entity_type="customer",
            entity_id=customer_id,
            data={"name": name, "joined_on": joined_on.isoformat() if joined_on else None},
        ))
        return profile

    def find_customer(self, tenant_id: str, customer_id: str) -> Optional[CustomerProfile]:
        data = self.tenants.for_tenant(tenant_id).load(self.customers_table, customer_id)
        return CustomerProfile.from_dict(data) if data else None

    def get_customer(self, tenant_id: str, customer_id: str) -> CustomerProfile:
        profile = self.find_customer(tenant_id, customer_id)
        if profile is None:
            raise CustomerNotFound(f"Customer {customer_id} not found", {"customer_id": customer_id})
        return profile

    def list_customers(self, tenant_id: str) -> List[CustomerProfile]:
        profiles = [
            CustomerProfile.from_dict(data)
            for data in self.tenants.for_tenant(tenant_id).load_all(self.customers_table)
        ]
        profiles.sort(key=lambda p: p.id)
        return profiles
