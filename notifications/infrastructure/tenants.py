from typing import Iterable, List

from ..application.ports import NotificationRepository, TenantRegistry


class StaticTenantRegistry(TenantRegistry):
    """Tenant registry backed by a fixed, configured list of tenant ids."""

    def __init__(self, tenant_ids: Iterable[str]):
        self._tenant_ids = list(dict.fromkeys(tenant_ids))

    async def list_tenant_ids(self) -> List[str]:
        return list(self._tenant_ids)


class RepositoryTenantRegistry(TenantRegistry):
    """Tenant registry that discovers tenants with open notifications in the store."""

    def __init__(self, notification_repository: NotificationRepository):
        self.notification_repository = notification_repository

    async def list_tenant_ids(self) -> List[str]:
        return await self.notification_repository.list_tenant_ids()
