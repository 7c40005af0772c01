from storefront.models.category import Category
from storefront.models.product import Product, ProductVariant

__all__ = [
    "Category",
    "Product", "ProductVariant",
]
