from app.platform.tenancy.models import Organization, User
from app.platform.tenancy.service import TenancyService, tenancy_service

__all__ = ["Organization", "TenancyService", "User", "tenancy_service"]
