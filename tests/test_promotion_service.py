from datetime import datetime, timedelta, timezone

import pytest

from mercadoboom.errors import NotFoundError, ValidationError
from mercadoboom.models import OfferType
from mercadoboom.services.promotion_service import PromotionService

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(db_session):
    return PromotionService(db_session)


def test_banner_crud(service):
    banner = service.create_banner({"title": "Hot Sale", "display_order": 2})
    service.create_banner({"title": "Envío gratis", "display_order": 1})

    assert [b.title for b in service.list_banners()] == ["Envío gratis", "Hot Sale"]

    service.update_banner(banner.bannerID, {"subtitle": "Hasta 50%"})
    assert service.get_banner(banner.bannerID).subtitle == "Hasta 50%"

    service.delete_banner(banner.bannerID)
    with pytest.raises(NotFoundError):
        service.get_banner(banner.bannerID)


def test_active_banners_respect_window(service):
    service.create_banner({"title": "Vigente", "start_date": NOW - timedelta(days=1), "end_date": NOW + timedelta(days=1)})
    service.create_banner({"title": "Vencido", "start_date": NOW - timedelta(days=5), "end_date": NOW - timedelta(days=2)})
    service.create_banner({"title": "Apagado", "is_active": False})
    service.create_banner({"title": "Sin fechas"})

    titles = {b.title for b in service.active_banners(NOW)}
    assert titles == {"Vigente", "Sin fechas"}


def test_window_must_be_ordered(service):
    with pytest.raises(ValidationError):
        service.create_banner({"title": "Al revés", "start_date": NOW, "end_date": NOW - timedelta(hours=1)})


def test_offer_product_must_exist(service, make_product):
    with pytest.raises(ValidationError):
        service.create_offer({"title": "Boom", "productID": 12345})

    product = make_product()
    offer = service.create_offer({"title": "Boom", "productID": product.productID, "offer_type": OfferType.BOOM})
    assert offer.offer_type is OfferType.BOOM
    assert [o.offerID for o in service.active_offers(NOW)] == [offer.offerID]
