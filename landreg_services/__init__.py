"""Public service surface for the land registry."""

from landreg_services.land_registry import (
    LandRegistryService,
    RequestContext,
    ServiceResult,
    build_audit_query,
    create_land_registry,
)

__all__ = [
    "LandRegistryService",
    "RequestContext",
    "ServiceResult",
    "build_audit_query",
    "create_land_registry",
]
