from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from mercadoboom.errors import NotFoundError, ValidationError
from mercadoboom.models import Banner, Product, SpecialOffer

PromoT = TypeVar("PromoT", Banner, SpecialOffer)


class PromotionService:
    """CRUD for storefront banners and special offers, ordered by ``display_order``."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # Banners
    def list_banners(self) -> List[Banner]:
        return self._list(Banner)

    def get_banner(self, banner_id: int) -> Banner:
        return self._get(Banner, banner_id, "Banner no encontrado")

    def create_banner(self, fields: Dict[str, Any]) -> Banner:
        return self._create(Banner, fields)

    def update_banner(self, banner_id: int, fields: Dict[str, Any]) -> Banner:
        return self._update(self.get_banner(banner_id), fields)

    def delete_banner(self, banner_id: int) -> None:
        self._delete(self.get_banner(banner_id))

    def active_banners(self, now: Optional[datetime] = None) -> List[Banner]:
        return self._active(Banner, now)

    # Special offers
    def list_offers(self) -> List[SpecialOffer]:
        return self._list(SpecialOffer)

    def get_offer(self, offer_id: int) -> SpecialOffer:
        return self._get(SpecialOffer, offer_id, "Oferta no encontrada")

    def create_offer(self, fields: Dict[str, Any]) -> SpecialOffer:
        self._check_offer_product(fields)
        return self._create(SpecialOffer, fields)

    def update_offer(self, offer_id: int, fields: Dict[str, Any]) -> SpecialOffer:
        offer = self.get_offer(offer_id)
        self._check_offer_product(fields)
        return self._update(offer, fields)

    def delete_offer(self, offer_id: int) -> None:
        self._delete(self.get_offer(offer_id))

    def active_offers(self, now: Optional[datetime] = None) -> List[SpecialOffer]:
        return self._active(SpecialOffer, now)

    # ------------------------------------------------------------------
    def _list(self, model: Type[PromoT]) -> List[PromoT]:
        pk = model.__mapper__.primary_key[0]
        return self.db.query(model).order_by(model.display_order, pk).all()

    def _get(self, model: Type[PromoT], item_id: int, missing: str) -> PromoT:
        item = self.db.get(model, item_id)
        if item is None:
            raise NotFoundError(missing)
        return item

    def _create(self, model: Type[PromoT], fields: Dict[str, Any]) -> PromoT:
        self._check_window(fields.get("start_date"), fields.get("end_date"))
        item = model(**fields)
        self.db.add(item)
        self.db.commit()
        self.logger.info("%s created", model.__name__, extra={"title": item.title})
        return item

    def _update(self, item: PromoT, fields: Dict[str, Any]) -> PromoT:
        self._check_window(
            fields.get("start_date", item.start_date),
            fields.get("end_date", item.end_date),
        )
        for key, value in fields.items():
            setattr(item, key, value)
        self.db.commit()
        self.logger.info("%s updated", type(item).__name__, extra={"title": item.title})
        return item

    def _delete(self, item: Union[Banner, SpecialOffer]) -> None:
        self.db.delete(item)
        self.db.commit()
        self.logger.info("%s deleted", type(item).__name__, extra={"title": item.title})

    def _active(self, model: Type[PromoT], now: Optional[datetime]) -> List[PromoT]:
        now = now or datetime.now(timezone.utc)
        pk = model.__mapper__.primary_key[0]
        return (
            self.db.query(model)
            .filter(model.is_active.is_(True))
            .filter(or_(model.start_date.is_(None), model.start_date <= now))
            .filter(or_(model.end_date.is_(None), model.end_date >= now))
            .order_by(model.display_order, pk)
            .all()
        )

    def _check_offer_product(self, fields: Dict[str, Any]) -> None:
        product_id = fields.get("productID")
        if product_id is not None and self.db.get(Product, product_id) is None:
            raise ValidationError("El producto de la oferta no existe")

    @staticmethod
    def _check_window(start: Optional[datetime], end: Optional[datetime]) -> None:
        if start is None or end is None:
            return
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        if end < start:
            raise ValidationError("La fecha de fin debe ser posterior a la de inicio")
