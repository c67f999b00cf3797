# tests/test_transformer.py
import pytest

from catalog_sync.models.sink import DisplayType
from catalog_sync.models.source import SourceItemImage, SourceUnit, SourceVariation
from catalog_sync.transformers.config_transformer import build_unit, display_type_for, name_translations
from catalog_sync.transformers.product_transformer import (
    ProductTransformer,
    TransformContext,
    net_from_gross,
    to_locale,
)
from catalog_sync.utils.identifiers import product_media_id

def context(**overrides):
    values = dict(
        tenant_id="tenant-1",
        languages=["de", "en"],
        tax_id="tax-standard",
        tax_rate=19.0,
        currency_id="currency-eur",
        default_sales_price_id=1,
        rrp_sales_price_id=2,
    )
    values.update(overrides)
    return TransformContext(**values)

def variation(**data):
    base = {"id": 11, "itemId": 1, "number": "SKU-11"}
    base.update(data)
    return SourceVariation.model_validate(base)

@pytest.mark.parametrize("lang,locale", [("de", "de-DE"), ("en", "en-GB"), ("cz", "cs-CZ"), ("XX", "xx-XX")])
def test_to_locale(lang, locale):
    assert to_locale(lang) == locale

def test_net_from_gross():
    assert net_from_gross(119.0, 19.0) == 100.0
    assert net_from_gross(10.0, 7.0) == 9.35
    assert net_from_gross(5.0, 0.0) == 5.0

def test_name_prefers_language_chain_then_item_texts():
    transformer = ProductTransformer(context())

    assert transformer.product_name(variation(variationTexts=[
        {"lang": "en", "name": "Chair"}, {"lang": "de", "name": "Stuhl"},
    ])) == "Stuhl"
    assert transformer.product_name(variation(variationTexts=[{"lang": "fr", "name": "Chaise"}])) == "Chaise"
    assert transformer.product_name(variation(
        item={"id": 1, "itemTexts": [{"lang": "en", "name": "Item chair"}]},
    )) == "Item chair"
    assert transformer.product_name(variation()) == "Product 11"

def test_translations_use_storefront_locales():
    product = ProductTransformer(context()).transform_as_parent(
        variation(variationTexts=[
            {"lang": "de", "name": "Stuhl", "description": "Bequem"},
            {"lang": "cz", "name": "Židle"},
        ]),
        "p-11",
    )

    assert product.translations == {
        "de-DE": {"name": "Stuhl", "description": "Bequem"},
        "cs-CZ": {"name": "Židle"},
    }
    assert product.description == "Bequem"

def test_price_with_list_price():
    product = ProductTransformer(context()).transform_as_parent(
        variation(variationSalesPrices=[{"salesPriceId": 1, "price": 119}, {"salesPriceId": 2, "price": 149}]),
        "p-11",
    )

    payload = product.to_payload()["price"][0]
    assert payload["gross"] == 119.0
    assert payload["net"] == 100.0
    assert payload["linked"] is True
    assert payload["listPrice"] == {"currencyId": "currency-eur", "gross": 149.0, "net": 125.21, "linked": True}

def test_lower_rrp_is_not_a_list_price():
    product = ProductTransformer(context()).transform_as_parent(
        variation(variationSalesPrices=[{"salesPriceId": 1, "price": 119}, {"salesPriceId": 2, "price": 99}]),
        "p-11",
    )

    assert product.price[0].list_price is None

def test_price_falls_back_to_price_types_then_first_price():
    transformer = ProductTransformer(context(
        default_sales_price_id=None,
        rrp_sales_price_id=None,
        sales_price_types={5: "default", 6: "rrp"},
    ))
    typed = variation(variationSalesPrices=[
        {"salesPriceId": 6, "price": 200}, {"salesPriceId": 5, "price": 150},
    ])
    main, rrp = transformer.select_prices(typed)
    assert (main.sales_price_id, rrp.sales_price_id) == (5, 6)

    untyped = variation(variationSalesPrices=[{"salesPriceId": 9, "price": 10}])
    main, rrp = transformer.select_prices(untyped)
    assert main.sales_price_id == 9
    assert rrp is None

    assert transformer.build_price(variation())[0].gross == 0.0

def test_fallback_product_number_and_stock():
    product = ProductTransformer(context()).transform_as_parent(
        variation(number=None, stock=[{"warehouseId": 1, "netStock": 3.7}, {"warehouseId": 2, "netStock": 2}]),
        "p-11",
    )

    assert product.product_number == "PLY-11"
    assert product.stock == 5

def test_child_options_and_parent_properties():
    transformer = ProductTransformer(context(
        attribute_value_ids={"501": "option-501"},
        property_selection_ids={"900": "selection-900"},
        category_ids={"42": "category-42"},
    ))
    source = variation(
        variationAttributeValues=[{"attributeId": 5, "valueId": 501}, {"attributeId": 6, "valueId": 999}],
        variationProperties=[{"propertyId": 70, "propertySelectionId": 900}],
        variationCategories=[{"categoryId": 42}, {"categoryId": 43}],
    )

    parent = transformer.transform_as_parent(source, "p-11")
    child = transformer.transform_as_child(source, "c-11", "p-10")

    assert [ref.id for ref in parent.properties] == ["option-501", "selection-900"]
    assert parent.options is None
    assert [ref.id for ref in child.options] == ["option-501"]
    assert [ref.id for ref in child.properties] == ["selection-900"]
    assert child.parent_id == "p-10"
    assert [ref.id for ref in child.categories] == ["category-42"]

def test_child_media_only_contains_linked_images():
    images = [
        SourceItemImage.model_validate({"id": 1, "itemId": 1, "position": 2, "variationLinks": [{"variationId": 11}]}),
        SourceItemImage.model_validate({"id": 2, "itemId": 1, "position": 1}),
        SourceItemImage.model_validate({"id": 3, "itemId": 1, "position": 0}),
    ]
    transformer = ProductTransformer(context(images={1: images}, media_ids={1: "m-1", 2: "m-2"}))

    parent = transformer.transform_as_parent(variation(), "p-11")
    child = transformer.transform_as_child(variation(id=12), "c-12", "p-11")
    linked = transformer.transform_as_child(variation(), "c-11", "p-11")

    assert [m.media_id for m in parent.media] == ["m-2", "m-1"]
    assert child.media == []
    assert [m.id for m in linked.media] == [product_media_id(11, 1)]

@pytest.mark.parametrize("selection,expected", [
    ("image", DisplayType.MEDIA),
    ("dropdown", DisplayType.SELECT),
    ("box", DisplayType.TEXT),
    (None, DisplayType.TEXT),
])
def test_display_type_for(selection, expected):
    assert display_type_for(selection) == expected

def test_unit_and_name_translations():
    unit = SourceUnit.model_validate({"id": 1, "unitOfMeasurement": "C62", "names": [{"lang": "en", "name": "Piece"}]})

    built = build_unit(unit, "unit-1", ["de", "en"])

    assert built.name == "Piece"
    assert built.short_code == "C62"
    assert name_translations({"de": "Stück", "en": ""}) == {"de-DE": {"name": "Stück"}}
    assert name_translations({}) is None
