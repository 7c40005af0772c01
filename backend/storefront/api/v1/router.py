from fastapi import APIRouter

from storefront.api.v1 import product_import

api_router = APIRouter()

api_router.include_router(product_import.router, prefix="/products/import", tags=["product-import"])
