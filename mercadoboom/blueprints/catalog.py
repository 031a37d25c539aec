from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from mercadoboom.blueprints.common import (
    json_body,
    require_user,
    serialize_banner,
    serialize_offer,
    serialize_product,
)
from mercadoboom.database import get_db
from mercadoboom.models import Address
from mercadoboom.schemas import AddressRequest, parse_payload
from mercadoboom.services.catalog_service import CatalogService
from mercadoboom.services.promotion_service import PromotionService

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api")


def _serialize_address(address: Address) -> Dict[str, Any]:
    return {
        "id": address.addressID,
        "title": address.title,
        "street": address.street,
        "city": address.city,
        "state": address.state,
        "postalCode": address.postal_code,
        "country": address.country,
        "isDefault": bool(address.is_default),
    }


@catalog_bp.route("/categories", methods=["GET"])
def list_categories():
    categories = CatalogService(get_db()).list_categories()
    return jsonify(
        [{"id": c.categoryID, "name": c.name, "emoji": c.emoji} for c in categories]
    )


@catalog_bp.route("/products", methods=["GET"])
def list_products():
    category_id = request.args.get("category", type=int)
    featured = request.args.get("featured", "").lower() in {"1", "true"}
    products = CatalogService(get_db()).list_products(category_id=category_id, featured=featured)
    return jsonify([serialize_product(p) for p in products])


@catalog_bp.route("/products/<int:product_id>", methods=["GET"])
def get_product(product_id: int):
    return jsonify(serialize_product(CatalogService(get_db()).get_product(product_id)))


@catalog_bp.route("/banners", methods=["GET"])
def active_banners():
    return jsonify([serialize_banner(b) for b in PromotionService(get_db()).active_banners()])


@catalog_bp.route("/special-offers", methods=["GET"])
def active_offers():
    return jsonify([serialize_offer(o) for o in PromotionService(get_db()).active_offers()])


@catalog_bp.route("/addresses", methods=["GET"])
def list_addresses():
    user = require_user()
    return jsonify([_serialize_address(a) for a in CatalogService(get_db()).list_addresses(user.userID)])


@catalog_bp.route("/addresses", methods=["POST"])
def add_address():
    user = require_user()
    payload = parse_payload(AddressRequest, json_body())
    address = CatalogService(get_db()).add_address(user.userID, **payload.model_dump())
    return jsonify(_serialize_address(address)), 201


@catalog_bp.route("/addresses/<int:address_id>", methods=["PATCH"])
def update_address(address_id: int):
    user = require_user()
    service = CatalogService(get_db())
    # Fields missing from the body keep their stored values
    merged = {**_serialize_address(service.get_address(user.userID, address_id)), **json_body()}
    payload = parse_payload(AddressRequest, merged)
    address = service.update_address(user.userID, address_id, **payload.model_dump())
    return jsonify(_serialize_address(address))


@catalog_bp.route("/addresses/<int:address_id>", methods=["DELETE"])
def delete_address(address_id: int):
    user = require_user()
    CatalogService(get_db()).delete_address(user.userID, address_id)
    return jsonify({"success": True})
