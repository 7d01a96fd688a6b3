from fastapi import FastAPI

from product_access.api.dependencies import get_engine, require_product_access
from product_access.api.routes import admin_router, products_router, router


def include_routers(app: FastAPI) -> FastAPI:
    app.include_router(router)
    app.include_router(products_router)
    app.include_router(admin_router)
    return app


__all__ = [
    "admin_router",
    "get_engine",
    "include_routers",
    "products_router",
    "require_product_access",
    "router",
]
