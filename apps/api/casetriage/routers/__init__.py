"""API routers."""

from casetriage.routers.audit import router as audit_router
from casetriage.routers.cases import router as cases_router
from casetriage.routers.export import router as export_router

__all__ = ["audit_router", "cases_router", "export_router"]
