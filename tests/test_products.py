"""Tests for the product catalog."""

import re

import pytest

from errors import NotFoundError, ValidationError
from products import ProductService, final_price, find_variant_option, generate_sku, in_stock, primary_image


class TestDerived:
    def test_final_price(self):
        assert final_price({"price": 499, "discount": 10}) == 449.1
        assert final_price({"price": 100}) == 100.0

    def test_in_stock(self):
        assert in_stock({"stock": 1})
        assert not in_stock({"stock": 0})

    def test_primary_image(self):
        images = [{"url": "a.png"}, {"url": "b.png", "is_primary": True}]
        assert primary_image({"images": images}) == "b.png"
        assert primary_image({"images": images[:1]}) == "a.png"
        assert primary_image({}) is None

    def test_sku(self):
        assert re.fullmatch(r"STA-[0-9A-Z]{6}", generate_sku("stationery"))

    def test_variant_lookup(self):
        product = {"name": "Tee", "variants": [
            {"name": "Color", "options": [{"value": "Red", "price_modifier": 5}]},
        ]}
        assert find_variant_option(product, "Color", "Red")["price_modifier"] == 5
        with pytest.raises(ValidationError):
            find_variant_option(product, "Color", "Blue")


class TestProductService:
    def test_create_defaults(self, make_product):
        product = make_product()
        assert product["rating"] == {"average": 0, "count": 0}
        assert product["sales"] == {"total_sold": 0, "revenue": 0}
        assert product["is_active"] is True
        assert product["created_by"] == "admin"

    def test_update_restricted_fields(self, db, make_product):
        product = make_product()
        service = ProductService(db)
        updated = service.update_product(str(product["_id"]), {"price": 120, "stock": 3}, actor_id="admin")
        assert updated["price"] == 120
        assert updated["stock"] == 3
        with pytest.raises(ValidationError):
            service.update_product(str(product["_id"]), {"sales": {}})
        with pytest.raises(ValidationError):
            service.update_product(str(product["_id"]), {"discount": 150})

    def test_deactivate_hides_product(self, db, make_product):
        product = make_product()
        service = ProductService(db)
        service.deactivate_product(str(product["_id"]))
        with pytest.raises(NotFoundError):
            service.get_product(str(product["_id"]))
        assert service.get_product(str(product["_id"]), include_inactive=True)["is_active"] is False

    def test_list_filters(self, db, make_product):
        make_product(name="Hoodie", category="apparel")
        make_product(name="Notebook", category="stationery")
        service = ProductService(db)
        assert [p["name"] for p in service.list_products(category="stationery")] == ["Notebook"]
        assert [p["name"] for p in service.list_products(q="note")] == ["Notebook"]
        assert service.list_products(q="(") == []
