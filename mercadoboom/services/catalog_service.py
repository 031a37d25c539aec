from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from mercadoboom.errors import NotFoundError, StateConflictError, ValidationError
from mercadoboom.models import Address, Category, Order, Product
from mercadoboom.observability import increment_counter


class CatalogService:
    """Storefront products and categories, plus each customer's saved addresses."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def list_categories(self) -> List[Category]:
        return self.db.query(Category).filter_by(is_active=True).order_by(Category.name).all()

    def list_products(self, category_id: Optional[int] = None, featured: bool = False) -> List[Product]:
        query = self.db.query(Product).filter(Product.is_active.is_(True))
        if category_id is not None:
            query = query.filter(Product.categoryID == category_id)
        if featured:
            query = query.filter(Product.is_featured.is_(True))
        return query.order_by(Product.productID).all()

    def get_product(self, product_id: int) -> Product:
        product = self.db.query(Product).filter_by(productID=product_id, is_active=True).first()
        if product is None:
            raise NotFoundError("Producto no encontrado")
        return product

    # ------------------------------------------------------------------
    # Admin product management
    # ------------------------------------------------------------------
    def list_all_products(self) -> List[Product]:
        return self.db.query(Product).order_by(Product.productID).all()

    def get_any_product(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("Producto no encontrado")
        return product

    def create_product(self, fields: Dict[str, Any]) -> Product:
        self._check_category(fields.get("categoryID"))
        product = Product(**fields)
        self.db.add(product)
        self.db.commit()

        increment_counter("products_changed_total", labels={"change": "created"})
        self.logger.info("Product created", extra={"product_id": product.productID, "product_name": product.name})
        return product

    def update_product(self, product_id: int, fields: Dict[str, Any]) -> Product:
        product = self.get_any_product(product_id)
        if "categoryID" in fields:
            self._check_category(fields["categoryID"])
        for key, value in fields.items():
            setattr(product, key, value)
        self.db.commit()

        increment_counter("products_changed_total", labels={"change": "updated"})
        self.logger.info("Product updated", extra={"product_id": product_id})
        return product

    def deactivate_product(self, product_id: int) -> Product:
        """Hide a product from the storefront. Rows stay because orders point at them."""
        product = self.get_any_product(product_id)
        product.is_active = False
        self.db.commit()

        increment_counter("products_changed_total", labels={"change": "deactivated"})
        self.logger.info("Product deactivated", extra={"product_id": product_id})
        return product

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is not None and self.db.get(Category, category_id) is None:
            raise ValidationError("La categoría indicada no existe")

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------
    def list_addresses(self, user_id: int) -> List[Address]:
        return (
            self.db.query(Address)
            .filter_by(userID=user_id)
            .order_by(Address.is_default.desc(), Address.addressID)
            .all()
        )

    def add_address(self, user_id: int, **fields) -> Address:
        if fields.get("is_default"):
            self._clear_default(user_id)
        address = Address(userID=user_id, **fields)
        self.db.add(address)
        self.db.commit()
        return address

    def get_address(self, user_id: int, address_id: int) -> Address:
        address = self.db.query(Address).filter_by(addressID=address_id, userID=user_id).first()
        if address is None:
            # Other customers' addresses look the same as missing ones
            raise NotFoundError("Dirección no encontrada")
        return address

    def update_address(self, user_id: int, address_id: int, **fields) -> Address:
        address = self.get_address(user_id, address_id)
        if fields.get("is_default") and not address.is_default:
            self._clear_default(user_id)
        for key, value in fields.items():
            setattr(address, key, value)
        self.db.commit()
        return address

    def delete_address(self, user_id: int, address_id: int) -> None:
        address = self.get_address(user_id, address_id)
        in_use = self.db.query(Order.orderID).filter_by(shipping_addressID=address_id).first()
        if in_use is not None:
            raise StateConflictError("La dirección está asociada a pedidos y no se puede eliminar")
        self.db.delete(address)
        self.db.commit()
        self.logger.info("Address deleted", extra={"user_id": user_id, "address_id": address_id})

    def _clear_default(self, user_id: int) -> None:
        self.db.query(Address).filter_by(userID=user_id, is_default=True).update(
            {"is_default": False}, synchronize_session=False
        )
