"""
Recipes and production runs.

A run takes each ingredient out of raw-material stock and puts the recipe's
product into stock in one transaction. Ingredient amounts are converted to the
raw material's own stock unit first (kg/gram, ltr/ml); other units must match
exactly. What a run consumed is stored with it, so deleting the run gives back
exactly that, even after the recipe has been edited.
"""
from decimal import Decimal, ROUND_HALF_UP
import logging

from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from models import db, new_id, Product, Recipe, RecipeItem, ManufacturingRun, ManufacturingRunItem
from .db_utils import transaction
from .errors import InsufficientStockError, NotFoundError, ReferentialIntegrityError, ValidationError
from .stock_utils import lock_product, positive_quantity, add_stock, remove_stock
from .utils import json_body, to_money, parse_timestamp, iso_format, format_number

logger = logging.getLogger(__name__)

manufacturing_bp = Blueprint('manufacturing', __name__, url_prefix='/api')

DEFAULT_UNIT = 'pcs'

# unit -> (base unit, units of base per unit)
UNIT_CONVERSIONS = {
    'kg': ('gram', Decimal('1000')),
    'gram': ('gram', Decimal('1')),
    'ltr': ('ml', Decimal('1000')),
    'ml': ('ml', Decimal('1')),
}

DEFAULT_PAGE_SIZE = 10


def _base(unit):
    unit = unit or DEFAULT_UNIT
    return UNIT_CONVERSIONS.get(unit, (unit, Decimal('1')))


def convert_quantity(quantity, from_unit, to_unit):
    """Express `quantity` of `from_unit` in `to_unit`. None when the two units do not convert."""
    from_base, from_factor = _base(from_unit)
    to_base, to_factor = _base(to_unit)
    if from_base != to_base:
        return None
    return (quantity * from_factor / to_factor).quantize(Decimal('0.001'), rounding=ROUND_HALF_UP)


def _unit_cost(product):
    if product.per_unit_purchase_price is not None:
        return product.per_unit_purchase_price
    return product.purchase_price or Decimal('0.00')


def _owned_recipe(session, user_id, recipe_id):
    recipe = session.query(Recipe).filter_by(id=recipe_id, user_id=user_id).first()
    if recipe is None:
        raise NotFoundError('Recipe not found')
    return recipe


def _parse_ingredients(session, user_id, payload, product_id):
    ingredients = payload.get('ingredients')
    if not isinstance(ingredients, list) or not ingredients:
        raise ValidationError('At least one ingredient is required')

    parsed = []
    for index, item in enumerate(ingredients):
        if not isinstance(item, dict):
            raise ValidationError(f'ingredients[{index}] must be an object')
        raw_material_id = item.get('rawMaterialId')
        if not raw_material_id:
            raise ValidationError('Raw material is required')
        if raw_material_id == product_id:
            raise ValidationError('A product cannot be an ingredient of its own recipe')
        quantity = positive_quantity(item.get('quantity'), f'ingredients[{index}].quantity')
        parsed.append((raw_material_id, quantity, item.get('unit') or DEFAULT_UNIT))

    wanted = {raw_material_id for raw_material_id, _, _ in parsed}
    found = (session.query(Product.id)
             .filter(Product.id.in_(wanted), Product.user_id == user_id, Product.is_raw_material.is_(True))
             .count())
    if found != len(wanted):
        raise ValidationError('Some raw materials not found or not marked as raw materials')
    return parsed


def _recipe_fields(payload):
    name = (payload.get('name') or '').strip()
    if not name:
        raise ValidationError('Recipe name is required')
    return name, payload.get('description')


def create_recipe(session, user_id, payload):
    name, description = _recipe_fields(payload)
    product_id = payload.get('productId')
    if not product_id:
        raise ValidationError('Product is required')

    with transaction(session):
        if session.query(Product).filter_by(id=product_id, user_id=user_id).first() is None:
            raise NotFoundError(f'Product {product_id} not found')
        if session.query(Recipe).filter_by(user_id=user_id, product_id=product_id).first() is not None:
            raise ValidationError('Product already has a recipe')
        ingredients = _parse_ingredients(session, user_id, payload, product_id)

        recipe = Recipe(id=payload.get('id') or new_id(), user_id=user_id, name=name,
                        description=description, product_id=product_id)
        for raw_material_id, quantity, unit in ingredients:
            recipe.ingredients.append(RecipeItem(user_id=user_id, raw_material_id=raw_material_id,
                                                 quantity=quantity, unit=unit))
        session.add(recipe)

    logger.info("Recipe %s (%s) created for user %s", recipe.id, recipe.name, user_id)
    return recipe


def update_recipe(session, user_id, recipe_id, payload):
    """Rename a recipe and replace its ingredient list. The product it makes does not change."""
    name, description = _recipe_fields(payload)
    with transaction(session):
        recipe = _owned_recipe(session, user_id, recipe_id)
        ingredients = _parse_ingredients(session, user_id, payload, recipe.product_id)
        recipe.name = name
        recipe.description = description
        recipe.ingredients.clear()
        session.flush()
        for raw_material_id, quantity, unit in ingredients:
            recipe.ingredients.append(RecipeItem(user_id=user_id, raw_material_id=raw_material_id,
                                                 quantity=quantity, unit=unit))
    return recipe


def delete_recipe(session, user_id, recipe_id):
    with transaction(session):
        recipe = _owned_recipe(session, user_id, recipe_id)
        runs = session.query(ManufacturingRun).filter_by(recipe_id=recipe.id).count()
        if runs:
            raise ReferentialIntegrityError(
                f'This recipe cannot be deleted because it has {runs} production record(s). '
                'Delete them first.')
        session.delete(recipe)
    logger.info("Recipe %s deleted for user %s", recipe_id, user_id)


def _requirements(session, user_id, recipe, quantity_produced, lock):
    """[(ingredient, raw material, amount in stock units)] for producing `quantity_produced`."""
    rows = []
    for ingredient in recipe.ingredients:
        if lock:
            raw_material = lock_product(session, user_id, ingredient.raw_material_id)
        else:
            raw_material = (session.query(Product)
                            .filter_by(id=ingredient.raw_material_id, user_id=user_id).first())
            if raw_material is None:
                raise NotFoundError(f'Product {ingredient.raw_material_id} not found')
        required = ingredient.quantity * quantity_produced
        in_stock_units = convert_quantity(required, ingredient.unit, raw_material.unit)
        if in_stock_units is None:
            raise ValidationError(
                f'Unit mismatch for {raw_material.name}. Recipe needs {ingredient.unit}, '
                f'but stock is in {raw_material.unit or DEFAULT_UNIT}')
        rows.append((ingredient, raw_material, in_stock_units))
    return rows


def produce(session, user_id, payload):
    """
    Run a recipe: consume raw materials, add the finished product, record the run.

    - manufacturingCost defaults to the cost of what was consumed.
    - A positive cost becomes the product's per-unit purchase price.
    """
    recipe_id = payload.get('recipeId')
    if not recipe_id:
        raise ValidationError('Recipe is required')
    quantity_produced = positive_quantity(payload.get('quantityProduced'), 'quantityProduced')
    cost = None
    if payload.get('manufacturingCost') not in (None, ''):
        cost = to_money(payload['manufacturingCost'], 'manufacturingCost')

    with transaction(session):
        recipe = _owned_recipe(session, user_id, recipe_id)
        product = lock_product(session, user_id, recipe.product_id)
        run = ManufacturingRun(
            id=payload.get('id') or new_id(),
            user_id=user_id,
            recipe_id=recipe.id,
            product_id=product.id,
            quantity_produced=quantity_produced,
            notes=payload.get('notes'),
        )
        if payload.get('productionDate'):
            run.production_date = parse_timestamp(payload['productionDate'], field='productionDate')

        consumed_cost = Decimal('0.00')
        for ingredient, raw_material, amount in _requirements(session, user_id, recipe, quantity_produced, True):
            if amount > raw_material.quantity:
                raise InsufficientStockError(
                    f'Insufficient {raw_material.name}. '
                    f'Required: {format_number(ingredient.quantity * quantity_produced)} {ingredient.unit}, '
                    f'Available: {format_number(raw_material.quantity)} {raw_material.unit or DEFAULT_UNIT}')
            remove_stock(raw_material, amount)
            run.consumed.append(ManufacturingRunItem(raw_material_id=raw_material.id, quantity=amount))
            consumed_cost += amount * _unit_cost(raw_material)

        add_stock(product, quantity_produced)
        # zero means "not given", same as omitting it
        if not cost:
            cost = consumed_cost.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        run.manufacturing_cost = cost
        if cost > 0:
            product.per_unit_purchase_price = (cost / quantity_produced).quantize(
                Decimal('0.01'), rounding=ROUND_HALF_UP)
        session.add(run)

    logger.info("Manufacturing run %s: %s x %s for user %s (cost %s)",
                run.id, format_number(quantity_produced), product.name, user_id, cost)
    return run


def estimate_cost(session, user_id, recipe_id, quantity_produced):
    quantity_produced = positive_quantity(quantity_produced, 'quantityProduced')
    recipe = _owned_recipe(session, user_id, recipe_id)

    total = Decimal('0.00')
    breakdown = []
    for ingredient, raw_material, amount in _requirements(session, user_id, recipe, quantity_produced, False):
        unit_cost = _unit_cost(raw_material)
        line = amount * unit_cost
        total += line
        breakdown.append({
            'materialName': raw_material.name,
            'quantity': float(ingredient.quantity * quantity_produced),
            'unit': ingredient.unit,
            'perUnitCost': float(unit_cost),
            'totalCost': float(line.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)),
        })

    total = total.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    return {
        'estimatedCost': float(total),
        'costPerUnit': float((total / quantity_produced).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)),
        'breakdown': breakdown,
    }


def delete_run(session, user_id, run_id):
    """
    Undo a production run: raw materials go back, the finished goods come out.
    Refused with InsufficientStockError when the produced units are no longer in stock.
    """
    with transaction(session):
        run = session.query(ManufacturingRun).filter_by(id=run_id, user_id=user_id).first()
        if run is None:
            raise NotFoundError('Manufacturing record not found')
        product = lock_product(session, user_id, run.product_id)
        remove_stock(product, run.quantity_produced)
        for item in run.consumed:
            add_stock(lock_product(session, user_id, item.raw_material_id), item.quantity)
        session.delete(run)
    logger.info("Manufacturing run %s reversed for user %s", run_id, user_id)


# --- serialization ---

def _ingredient_to_dict(item):
    raw_material = item.raw_material
    return {
        'id': item.id,
        'rawMaterialId': item.raw_material_id,
        'rawMaterialName': raw_material.name if raw_material is not None else None,
        'quantity': float(item.quantity),
        'unit': item.unit,
    }


def recipe_to_dict(recipe):
    product = recipe.product
    return {
        'id': recipe.id,
        'userId': recipe.user_id,
        'name': recipe.name,
        'description': recipe.description,
        'productId': recipe.product_id,
        'productName': product.name if product is not None else None,
        'ingredients': [_ingredient_to_dict(item) for item in recipe.ingredients],
        'createdAt': iso_format(recipe.created_at),
        'updatedAt': iso_format(recipe.updated_at),
    }


def run_to_dict(run):
    product = run.product
    return {
        'id': run.id,
        'userId': run.user_id,
        'recipeId': run.recipe_id,
        'recipeName': run.recipe.name if run.recipe is not None else None,
        'productId': run.product_id,
        'productName': product.name if product is not None else None,
        'quantityProduced': float(run.quantity_produced),
        'manufacturingCost': float(run.manufacturing_cost),
        'productionDate': iso_format(run.production_date),
        'notes': run.notes,
        'consumed': [
            {'rawMaterialId': item.raw_material_id, 'quantity': float(item.quantity)}
            for item in run.consumed
        ],
        'createdAt': iso_format(run.created_at),
    }


def _page_args():
    try:
        page = max(int(request.args.get('page', 1)), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = max(int(request.args.get('limit', DEFAULT_PAGE_SIZE)), 1)
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE
    return page, limit, (request.args.get('search') or '').strip()


def _page(pagination, serialize):
    return jsonify({
        'items': [serialize(row) for row in pagination.items],
        'total': pagination.total,
        'page': pagination.page,
        'totalPages': pagination.pages,
    })


# --- routes ---

@manufacturing_bp.route('/recipes', methods=['GET'])
@login_required
def list_recipes_route():
    page, limit, search = _page_args()
    query = db.session.query(Recipe).filter(Recipe.user_id == current_user.id)
    if search:
        query = query.filter(Recipe.name.ilike(f'%{search}%'))
    pagination = query.order_by(Recipe.created_at.desc()).paginate(page=page, per_page=limit, error_out=False)
    return _page(pagination, recipe_to_dict)


@manufacturing_bp.route('/recipes', methods=['POST'])
@login_required
def create_recipe_route():
    recipe = create_recipe(db.session, current_user.id, json_body())
    return jsonify(recipe_to_dict(recipe)), 201


@manufacturing_bp.route('/recipes/<recipe_id>', methods=['PUT'])
@login_required
def update_recipe_route(recipe_id):
    recipe = update_recipe(db.session, current_user.id, recipe_id, json_body())
    return jsonify(recipe_to_dict(recipe))


@manufacturing_bp.route('/recipes/<recipe_id>', methods=['DELETE'])
@login_required
def delete_recipe_route(recipe_id):
    delete_recipe(db.session, current_user.id, recipe_id)
    return '', 204


@manufacturing_bp.route('/manufacturing', methods=['GET'])
@login_required
def list_runs_route():
    page, limit, search = _page_args()
    query = db.session.query(ManufacturingRun).filter(ManufacturingRun.user_id == current_user.id)
    if search:
        query = query.join(Recipe, ManufacturingRun.recipe_id == Recipe.id).filter(Recipe.name.ilike(f'%{search}%'))
    pagination = (query.order_by(ManufacturingRun.production_date.desc())
                  .paginate(page=page, per_page=limit, error_out=False))
    return _page(pagination, run_to_dict)


@manufacturing_bp.route('/manufacturing', methods=['POST'])
@login_required
def produce_route():
    run = produce(db.session, current_user.id, json_body())
    return jsonify(run_to_dict(run)), 201


@manufacturing_bp.route('/manufacturing/estimate-cost', methods=['POST'])
@login_required
def estimate_cost_route():
    payload = json_body()
    return jsonify(estimate_cost(db.session, current_user.id, payload.get('recipeId'),
                                 payload.get('quantityProduced')))


@manufacturing_bp.route('/manufacturing/<run_id>', methods=['DELETE'])
@login_required
def delete_run_route(run_id):
    delete_run(db.session, current_user.id, run_id)
    return '', 204
