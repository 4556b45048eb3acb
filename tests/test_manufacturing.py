from decimal import Decimal

import pytest

from conftest import Factory
from models import Product, Recipe, RecipeItem, ManufacturingRun
from routes.errors import InsufficientStockError, NotFoundError, ReferentialIntegrityError, ValidationError
from routes.inventory import delete_product
from routes.manufacturing import (
    convert_quantity, create_recipe, update_recipe, delete_recipe, produce, estimate_cost, delete_run,
)
from routes.sales import create_sale


def _qty(session, product):
    session.expire_all()
    return float(session.get(Product, product.id).quantity)


@pytest.fixture()
def bakery(session, factory, owner):
    flour = factory.product(name='Flour', quantity=10, unit='kg', is_raw_material=True,
                            per_unit_purchase_price=Decimal('50.00'))
    sugar = factory.product(name='Sugar', quantity=1000, unit='gram', is_raw_material=True,
                            per_unit_purchase_price=Decimal('0.10'))
    bread = factory.product(name='Bread', quantity=0, unit='pcs')
    recipe = create_recipe(session, owner.id, {
        'name': 'Bread loaf',
        'productId': bread.id,
        'ingredients': [
            {'rawMaterialId': flour.id, 'quantity': 500, 'unit': 'gram'},
            {'rawMaterialId': sugar.id, 'quantity': 20, 'unit': 'gram'},
        ],
    })
    return flour, sugar, bread, recipe


@pytest.mark.parametrize('quantity, from_unit, to_unit, expected', [
    ('500', 'gram', 'kg', Decimal('0.5')),
    ('2', 'ltr', 'ml', Decimal('2000')),
    ('3', 'pcs', None, Decimal('3')),
])
def test_convert_quantity(quantity, from_unit, to_unit, expected):
    assert convert_quantity(Decimal(quantity), from_unit, to_unit) == expected


def test_convert_quantity_refuses_unrelated_units():
    assert convert_quantity(Decimal('1'), 'ml', 'kg') is None


def test_production_consumes_raw_materials_and_stocks_the_product(session, owner, bakery):
    flour, sugar, bread, recipe = bakery

    run = produce(session, owner.id, {'recipeId': recipe.id, 'quantityProduced': 4})

    assert _qty(session, flour) == 8.0
    assert _qty(session, sugar) == 920.0
    assert _qty(session, bread) == 4.0
    assert float(run.manufacturing_cost) == 108.0
    assert float(session.get(Product, bread.id).per_unit_purchase_price) == 27.0
    assert sorted(float(item.quantity) for item in run.consumed) == [2.0, 80.0]


def test_shortage_of_one_ingredient_changes_nothing(session, owner, bakery):
    flour, sugar, bread, recipe = bakery
    sugar_row = session.get(Product, sugar.id)
    sugar_row.quantity = Decimal('50')
    session.commit()

    with pytest.raises(InsufficientStockError) as excinfo:
        produce(session, owner.id, {'recipeId': recipe.id, 'quantityProduced': 4})

    assert excinfo.value.message.startswith('Insufficient Sugar. Required: 80 gram, Available: 50 gram')
    assert _qty(session, flour) == 10.0
    assert _qty(session, sugar) == 50.0
    assert _qty(session, bread) == 0.0
    assert session.query(ManufacturingRun).count() == 0


def test_incompatible_units_are_rejected(session, factory, owner):
    oil = factory.product(name='Oil', quantity=5, unit='kg', is_raw_material=True)
    soap = factory.product(name='Soap', quantity=0)
    recipe = create_recipe(session, owner.id, {
        'name': 'Soap bar', 'productId': soap.id,
        'ingredients': [{'rawMaterialId': oil.id, 'quantity': 100, 'unit': 'ml'}],
    })

    with pytest.raises(ValidationError, match='Unit mismatch for Oil'):
        produce(session, owner.id, {'recipeId': recipe.id, 'quantityProduced': 1})
    assert _qty(session, oil) == 5.0


def test_explicit_cost_sets_the_product_unit_price(session, owner, bakery):
    _, _, bread, recipe = bakery
    run = produce(session, owner.id, {'recipeId': recipe.id, 'quantityProduced': 2,
                                      'manufacturingCost': 90, 'notes': 'morning batch'})
    assert float(run.manufacturing_cost) == 90.0
    assert float(session.get(Product, bread.id).per_unit_purchase_price) == 45.0


def test_deleting_a_run_reverses_it(session, owner, bakery):
    flour, sugar, bread, recipe = bakery
    run = produce(session, owner.id, {'recipeId': recipe.id, 'quantityProduced': 4})

    delete_run(session, owner.id, run.id)

    assert _qty(session, flour) == 10.0
    assert _qty(session, sugar) == 1000.0
    assert _qty(session, bread) == 0.0
    assert session.get(ManufacturingRun, run.id) is None


def test_reversal_uses_what_the_run_consumed_not_the_current_recipe(session, owner, bakery):
    flour, sugar, _, recipe = bakery
    run = produce(session, owner.id, {'recipeId': recipe.id, 'quantityProduced': 2})
    update_recipe(session, owner.id, recipe.id, {
        'name': 'Bread loaf (large)',
        'ingredients': [{'rawMaterialId': flour.id, 'quantity': 1, 'unit': 'kg'}],
    })

    delete_run(session, owner.id, run.id)

    assert _qty(session, flour) == 10.0
    assert _qty(session, sugar) == 1000.0


def test_run_whose_output_was_sold_cannot_be_reversed(session, owner, bakery):
    flour, _, bread, recipe = bakery
    run = produce(session, owner.id, {'recipeId': recipe.id, 'quantityProduced': 2})
    create_sale(session, owner.id, {'items': [{'productId': bread.id, 'quantity': 2, 'price': 60}]})

    with pytest.raises(InsufficientStockError):
        delete_run(session, owner.id, run.id)

    assert _qty(session, flour) == 9.0
    assert session.get(ManufacturingRun, run.id) is not None


def test_recipe_ingredients_must_be_own_raw_materials(session, factory, owner, other_user):
    bread = factory.product(name='Bread')
    not_raw = factory.product(name='Butter')
    foreign = Factory(session, other_user.id).product(name='Flour', is_raw_material=True)

    for material in (not_raw, foreign):
        with pytest.raises(ValidationError, match='not marked as raw materials'):
            create_recipe(session, owner.id, {
                'name': 'Bread', 'productId': bread.id,
                'ingredients': [{'rawMaterialId': material.id, 'quantity': 1}],
            })
    assert session.query(Recipe).count() == 0


def test_a_product_has_at_most_one_recipe(session, owner, bakery):
    flour, _, bread, _ = bakery
    with pytest.raises(ValidationError, match='already has a recipe'):
        create_recipe(session, owner.id, {
            'name': 'Another bread', 'productId': bread.id,
            'ingredients': [{'rawMaterialId': flour.id, 'quantity': 1, 'unit': 'kg'}],
        })


def test_update_replaces_the_ingredient_list(session, owner, bakery):
    flour, _, _, recipe = bakery
    update_recipe(session, owner.id, recipe.id, {
        'name': 'Flatbread',
        'ingredients': [{'rawMaterialId': flour.id, 'quantity': 250, 'unit': 'gram'}],
    })
    session.expire_all()
    rows = session.query(RecipeItem).filter_by(recipe_id=recipe.id).all()
    assert [(r.raw_material_id, float(r.quantity)) for r in rows] == [(flour.id, 250.0)]
    assert session.get(Recipe, recipe.id).name == 'Flatbread'


def test_recipe_with_runs_cannot_be_deleted(session, owner, bakery):
    _, _, _, recipe = bakery
    run = produce(session, owner.id, {'recipeId': recipe.id, 'quantityProduced': 1})

    with pytest.raises(ReferentialIntegrityError):
        delete_recipe(session, owner.id, recipe.id)

    delete_run(session, owner.id, run.id)
    delete_recipe(session, owner.id, recipe.id)
    assert session.get(Recipe, recipe.id) is None
    assert session.query(RecipeItem).count() == 0


def test_products_used_by_a_recipe_cannot_be_deleted(session, owner, bakery):
    flour, _, bread, _ = bakery
    for product in (flour, bread):
        with pytest.raises(ReferentialIntegrityError, match='recipe'):
            delete_product(session, owner.id, product.id)


def test_estimate_cost(session, owner, bakery):
    _, _, _, recipe = bakery
    estimate = estimate_cost(session, owner.id, recipe.id, 2)

    assert estimate['estimatedCost'] == 54.0
    assert estimate['costPerUnit'] == 27.0
    flour_line = next(line for line in estimate['breakdown'] if line['materialName'] == 'Flour')
    assert flour_line == {'materialName': 'Flour', 'quantity': 1000.0, 'unit': 'gram',
                          'perUnitCost': 50.0, 'totalCost': 50.0}


def test_another_accounts_recipe_is_not_found(session, owner, other_user, bakery):
    _, _, _, recipe = bakery
    with pytest.raises(NotFoundError):
        produce(session, other_user.id, {'recipeId': recipe.id, 'quantityProduced': 1})
    with pytest.raises(NotFoundError):
        estimate_cost(session, other_user.id, recipe.id, 1)


def test_manufacturing_routes(client, session, factory, auth_headers):
    cocoa = factory.product(name='Cocoa', quantity=3, unit='kg', is_raw_material=True,
                            per_unit_purchase_price=Decimal('400.00'))
    bar = factory.product(name='Chocolate bar', quantity=0)

    response = client.post('/api/recipes', headers=auth_headers, json={
        'name': 'Dark bar', 'productId': bar.id,
        'ingredients': [{'rawMaterialId': cocoa.id, 'quantity': 100, 'unit': 'gram'}],
    })
    assert response.status_code == 201
    recipe = response.get_json()
    assert recipe['productName'] == 'Chocolate bar'
    assert recipe['ingredients'][0]['rawMaterialName'] == 'Cocoa'

    response = client.post('/api/manufacturing/estimate-cost', headers=auth_headers,
                           json={'recipeId': recipe['id'], 'quantityProduced': 10})
    assert response.get_json()['estimatedCost'] == 400.0

    response = client.post('/api/manufacturing', headers=auth_headers,
                           json={'recipeId': recipe['id'], 'quantityProduced': 10})
    assert response.status_code == 201
    run = response.get_json()
    assert run['quantityProduced'] == 10.0
    assert run['recipeName'] == 'Dark bar'

    response = client.get('/api/manufacturing?search=dark', headers=auth_headers)
    body = response.get_json()
    assert (body['total'], body['page'], body['totalPages']) == (1, 1, 1)
    assert body['items'][0]['id'] == run['id']

    response = client.get('/api/recipes', headers=auth_headers)
    assert [r['id'] for r in response.get_json()['items']] == [recipe['id']]

    response = client.delete(f"/api/manufacturing/{run['id']}", headers=auth_headers)
    assert response.status_code == 204
    assert _qty(session, cocoa) == 3.0

    response = client.post('/api/manufacturing', headers=auth_headers,
                           json={'recipeId': 'missing', 'quantityProduced': 1})
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Recipe not found'}
