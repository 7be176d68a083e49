from fastapi import APIRouter
from orderflow.api import version_prefix
from orderflow.background_workers.routes import sweeps_admin_router
from orderflow.common.routes import home_router
from orderflow.orders.routes import orders_admin_router, orders_router
from orderflow.payments.routes import payments_router
from orderflow.payments.webhooks import webhooks_router


public_routers = APIRouter(prefix=version_prefix)

public_routers.include_router(orders_router, tags=["orders"])
public_routers.include_router(payments_router, tags=["payments"])
public_routers.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
public_routers.include_router(home_router, tags=["home"])

#--------------------------------------------------------------------------------------------------------

admin_routers = APIRouter(prefix=f"{version_prefix}/admin")

admin_routers.include_router(orders_admin_router, tags=["orders-admin"])
admin_routers.include_router(sweeps_admin_router, tags=["sweeps-admin"])
