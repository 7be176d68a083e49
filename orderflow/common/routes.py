from fastapi import APIRouter
from orderflow.common.utils import success_response
from orderflow.config.admin_config import admin_config

home_router = APIRouter()


@home_router.get("/health")
async def health():
    return success_response({"service": admin_config.SERVICE_NAME, "env": admin_config.ENV, "healthy": True})
