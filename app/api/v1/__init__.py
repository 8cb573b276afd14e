"""V1 API router aggregation."""

from fastapi import APIRouter

from app.api.v1.namespaces import router as namespaces_router
from app.api.v1.provisioning import router as provisioning_router
from app.api.v1.system import router as system_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(provisioning_router)
v1_router.include_router(namespaces_router)
v1_router.include_router(system_router)
