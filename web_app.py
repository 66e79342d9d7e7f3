#!/usr/bin/env python3
"""
Retail Ops Web API
JSON endpoints for ingredient costing, recipes, production batches and POS quotes
"""

import math
from dataclasses import asdict
from typing import Any, Dict, Mapping, Optional

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

import costing
from costing import CostingError
from retail_ops import (
    DEFAULT_INGREDIENT_TAX_RATE,
    DEFAULT_POS_TAX_RATE,
    DatabaseManager,
    Ingredient,
    Product,
    Recipe,
    RecipeIngredient,
    RecordNotFoundError,
    __version__,
)

DEFAULT_CONFIG = {
    'DATABASE': 'retail_ops.db',
    'INGREDIENT_TAX_RATE': DEFAULT_INGREDIENT_TAX_RATE,
    'POS_TAX_RATE': DEFAULT_POS_TAX_RATE,
    'CURRENCY_SYMBOL': 'R',
    'SIMILARITY_THRESHOLD': 0.7,
    'SECRET_KEY': 'retail-ops-dev',
}


def get_db() -> DatabaseManager:
    return current_app.extensions['retail_ops_db']


def ok(data: Any, status: int = 200, **extra):
    body = {'success': True, 'data': data}
    body.update(extra)
    return jsonify(body), status


def fail(message: str, status: int):
    return jsonify({'success': False, 'error': message}), status


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest('JSON object body required')
    return data


def require(data: Mapping[str, Any], key: str) -> Any:
    if data.get(key) in (None, ''):
        raise BadRequest(f'{key} is required')
    return data[key]


def number(data: Mapping[str, Any], key: str, default: Optional[float] = None) -> float:
    value = data.get(key, default) if default is not None else require(data, key)
    if isinstance(value, bool):
        raise BadRequest(f'{key} must be a number')
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise BadRequest(f'{key} must be a number')
    if not math.isfinite(result):
        raise BadRequest(f'{key} must be a finite number')
    return result


def flag(data: Mapping[str, Any], key: str) -> bool:
    value = data.get(key, False)
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ('true', 'false', '1', '0', 'yes', 'no', ''):
        return value.strip().lower() in ('true', '1', 'yes')
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise BadRequest(f'{key} must be true or false')


def optional_int(data: Mapping[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f'{key} must be an integer')


def ingredient_from_json(data: Mapping[str, Any]) -> Ingredient:
    return Ingredient(
        id=None,
        name=str(require(data, 'name')).strip(),
        pack_size=number(data, 'pack_size'),
        pack_unit=require(data, 'pack_unit'),
        pack_price=number(data, 'pack_price'),
        price_includes_tax=flag(data, 'price_includes_tax'),
        barcode=data.get('barcode') or '',
        notes=data.get('notes') or '',
    )


def recipe_from_json(data: Mapping[str, Any]) -> Recipe:
    return Recipe(
        id=None,
        name=str(require(data, 'name')).strip(),
        batch_size=number(data, 'batch_size'),
        batch_unit=data.get('batch_unit') or 'units',
        description=data.get('description') or '',
    )


def similar_names(name: str, items) -> list:
    threshold = current_app.config['SIMILARITY_THRESHOLD']
    return [f"Similar name exists: {m['name']} ({m['similarity']:.0%})"
            for m in costing.find_similar(name, items, threshold)]


def register_error_handlers(app: Flask):
    @app.errorhandler(CostingError)
    def handle_costing_error(e):
        app.logger.warning("Rejected request to %s: %s", request.path, e)
        return fail(str(e), 400)

    @app.errorhandler(RecordNotFoundError)
    def handle_not_found(e):
        return fail(str(e), 404)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return fail(e.description, e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return fail(f'Server error: {e}', 500)


def register_routes(app: Flask):

    @app.route('/api', methods=['GET'])
    @app.route('/api/', methods=['GET'])
    def api_index():
        """API documentation and available endpoints."""
        return jsonify({
            'message': 'Retail Ops API',
            'version': __version__,
            'available_endpoints': {
                'costing': {
                    'GET /api/units': 'Supported units and their families',
                    'POST /api/convert': 'Convert {"value", "from_unit", "to_unit"}',
                    'POST /api/ingredient-cost': 'Pack and usage cost with VAT breakdown',
                },
                'ingredients': {
                    'GET /api/ingredients': 'List ingredients (?search=)',
                    'POST /api/ingredients': 'Create ingredient',
                    'GET|PUT|DELETE /api/ingredients/<id>': 'Read, update or delete ingredient',
                },
                'products': {
                    'GET|POST /api/products': 'List or create products',
                    'DELETE /api/products/<id>': 'Delete product',
                    'GET /api/products/<id>/default-recipe': 'Most used recipe in recent batches',
                },
                'recipes': {
                    'GET|POST /api/recipes': 'List or create recipes',
                    'GET|PUT|DELETE /api/recipes/<id>': 'Recipe with ingredient costs',
                    'POST /api/recipes/<id>/ingredients': 'Add ingredient line',
                    'PUT|DELETE /api/recipe-ingredients/<id>': 'Edit or remove ingredient line',
                    'POST /api/recipes/<id>/scale': 'Scale recipe (requires JSON: {"target_quantity": 48})',
                },
                'production': {
                    'GET|POST /api/batches': 'List batches (?date=) or record a batch',
                    'GET|DELETE /api/batches/<id>': 'Batch with ingredient snapshot',
                    'GET /api/analytics/production': 'Daily totals and staff stats (?date=&days=)',
                },
                'pos': {
                    'POST /api/pos/quote': 'Basket subtotal, discount and VAT',
                },
            },
        })

    # Costing

    @app.route('/api/units', methods=['GET'])
    def api_units():
        return ok({
            'units': costing.UnitConverter().supported_units(),
            'base_units': dict(costing.UnitConverter.BASE_UNITS),
        })

    @app.route('/api/convert', methods=['POST'])
    def api_convert():
        data = json_body()
        value = number(data, 'value')
        from_unit = require(data, 'from_unit')
        to_unit = require(data, 'to_unit')
        return ok({
            'value': value,
            'from_unit': costing.normalize_unit(from_unit),
            'to_unit': costing.normalize_unit(to_unit),
            'result': costing.convert(value, from_unit, to_unit),
        })

    @app.route('/api/ingredient-cost', methods=['POST'])
    def api_ingredient_cost():
        """Cost a usage of an ingredient straight from its pack specification."""
        data = json_body()
        pack_size = number(data, 'pack_size')
        pack_price = number(data, 'pack_price')
        pack_unit = require(data, 'pack_unit')
        used_quantity = number(data, 'used_quantity', default=0)
        used_unit = data.get('used_unit') or pack_unit
        rate = number(data, 'tax_rate', default=current_app.config['INGREDIENT_TAX_RATE'])

        tax = costing.tax_breakdown(pack_price, rate, flag(data, 'price_includes_tax'))
        price_ex_tax = tax.price_ex_tax
        return ok({
            'cost_per_pack_unit': costing.cost_per_base_unit(pack_size, price_ex_tax),
            'cost_per_used_unit': costing.cost_per_used_unit(pack_size, price_ex_tax,
                                                             pack_unit, used_unit),
            'total_cost': costing.total_cost(pack_size, price_ex_tax, pack_unit,
                                             used_quantity, used_unit),
            'tax': tax.to_dict(),
        })

    # Ingredients

    def ingredient_json(ingredient: Ingredient) -> Dict[str, Any]:
        return ingredient.to_dict(current_app.config['INGREDIENT_TAX_RATE'])

    @app.route('/api/ingredients', methods=['GET'])
    def api_get_ingredients():
        """Get all ingredients as JSON."""
        ingredients = get_db().get_ingredients(search=request.args.get('search'))
        data = [ingredient_json(ing) for ing in ingredients]
        return ok(data, count=len(data))

    @app.route('/api/ingredients', methods=['POST'])
    def api_create_ingredient():
        ingredient = ingredient_from_json(json_body())
        db = get_db()
        warnings = similar_names(ingredient.name, [asdict(i) for i in db.get_ingredients()])
        db.add_ingredient(ingredient)
        return ok(ingredient_json(ingredient), 201, warnings=warnings)

    @app.route('/api/ingredients/<int:ingredient_id>', methods=['GET'])
    def api_get_ingredient(ingredient_id):
        ingredient = get_db().get_ingredient(ingredient_id)
        if not ingredient:
            return fail('Ingredient not found', 404)
        return ok(ingredient_json(ingredient))

    @app.route('/api/ingredients/<int:ingredient_id>', methods=['PUT'])
    def api_update_ingredient(ingredient_id):
        ingredient = ingredient_from_json(json_body())
        if not get_db().update_ingredient(ingredient_id, ingredient):
            return fail('Ingredient not found', 404)
        ingredient.id = ingredient_id
        return ok(ingredient_json(ingredient))

    @app.route('/api/ingredients/<int:ingredient_id>', methods=['DELETE'])
    def api_delete_ingredient(ingredient_id):
        if not get_db().delete_ingredient(ingredient_id):
            return fail('Ingredient not found', 404)
        return ok({'id': ingredient_id})

    # Products

    @app.route('/api/products', methods=['GET'])
    def api_get_products():
        data = [asdict(p) for p in get_db().get_products()]
        return ok(data, count=len(data))

    @app.route('/api/products', methods=['POST'])
    def api_create_product():
        data = json_body()
        product = Product(None, str(require(data, 'name')).strip(),
                          str(require(data, 'code')).strip())
        db = get_db()
        warnings = similar_names(product.name, [asdict(p) for p in db.get_products()])
        if db.add_product(product) is None:
            return fail(f"Product code '{product.code}' already exists", 409)
        return ok(asdict(product), 201, warnings=warnings)

    @app.route('/api/products/<int:product_id>', methods=['DELETE'])
    def api_delete_product(product_id):
        if not get_db().delete_product(product_id):
            return fail('Product not found', 404)
        return ok({'id': product_id})

    @app.route('/api/products/<int:product_id>/default-recipe', methods=['GET'])
    def api_default_recipe(product_id):
        db = get_db()
        if db.get_product(product_id) is None:
            return fail('Product not found', 404)
        recipe = db.suggest_default_recipe(product_id)
        return ok(asdict(recipe) if recipe else None)

    # Recipes

    @app.route('/api/recipes', methods=['GET'])
    def api_get_recipes():
        """Get all recipes with their batch costs."""
        db = get_db()
        data = []
        for recipe in db.get_recipes():
            cost = db.calculate_recipe_cost(recipe.id)
            entry = asdict(recipe)
            entry['total_cost'] = cost['total_cost']
            entry['cost_per_unit'] = cost['cost_per_unit']
            data.append(entry)
        return ok(data, count=len(data))

    @app.route('/api/recipes', methods=['POST'])
    def api_create_recipe():
        recipe = recipe_from_json(json_body())
        get_db().add_recipe(recipe)
        return ok(asdict(recipe), 201)

    @app.route('/api/recipes/<int:recipe_id>', methods=['GET'])
    def api_get_recipe(recipe_id):
        """Recipe with line costs, total and cost per batch unit."""
        return ok(get_db().calculate_recipe_cost(recipe_id))

    @app.route('/api/recipes/<int:recipe_id>', methods=['PUT'])
    def api_update_recipe(recipe_id):
        recipe = recipe_from_json(json_body())
        if not get_db().update_recipe(recipe_id, recipe):
            return fail('Recipe not found', 404)
        recipe.id = recipe_id
        return ok(asdict(recipe))

    @app.route('/api/recipes/<int:recipe_id>', methods=['DELETE'])
    def api_delete_recipe(recipe_id):
        if not get_db().delete_recipe(recipe_id):
            return fail('Recipe not found', 404)
        return ok({'id': recipe_id})

    @app.route('/api/recipes/<int:recipe_id>/ingredients', methods=['POST'])
    def api_add_recipe_ingredient(recipe_id):
        """Add a line either from a stored ingredient or from an explicit pack."""
        data = json_body()
        db = get_db()
        used_quantity = number(data, 'used_quantity')
        used_unit = require(data, 'used_unit')
        ingredient_id = optional_int(data, 'ingredient_id')
        if ingredient_id is not None:
            line = db.add_ingredient_to_recipe(recipe_id, ingredient_id, used_quantity, used_unit,
                                               current_app.config['INGREDIENT_TAX_RATE'])
        else:
            line = RecipeIngredient(
                id=None,
                recipe_id=recipe_id,
                ingredient_name=str(require(data, 'ingredient_name')).strip(),
                pack_size=number(data, 'pack_size'),
                pack_unit=require(data, 'pack_unit'),
                pack_price=number(data, 'pack_price'),
                used_quantity=used_quantity,
                used_unit=used_unit,
            )
            db.add_recipe_ingredient(line)
        return ok(line.to_dict(), 201)

    @app.route('/api/recipe-ingredients/<int:line_id>', methods=['PUT'])
    def api_update_recipe_ingredient(line_id):
        data = json_body()
        changes = {}
        for key in ('pack_size', 'pack_price', 'used_quantity'):
            if key in data:
                changes[key] = number(data, key)
        for key in ('ingredient_name', 'pack_unit', 'used_unit'):
            if key in data:
                changes[key] = require(data, key)
        if not changes:
            raise BadRequest('No editable fields supplied')
        line = get_db().update_recipe_ingredient(line_id, **changes)
        return ok(line.to_dict())

    @app.route('/api/recipe-ingredients/<int:line_id>', methods=['DELETE'])
    def api_delete_recipe_ingredient(line_id):
        if not get_db().delete_recipe_ingredient(line_id):
            return fail('Recipe ingredient not found', 404)
        return ok({'id': line_id})

    @app.route('/api/recipes/<int:recipe_id>/scale', methods=['POST'])
    def api_scale_recipe(recipe_id):
        """Scale recipe and return JSON. Nothing is persisted."""
        data = json_body()
        return ok(get_db().scale_recipe(recipe_id, number(data, 'target_quantity')))

    # Production

    @app.route('/api/batches', methods=['GET'])
    def api_get_batches():
        batches = get_db().get_production_batches(request.args.get('date'))
        data = [b.to_dict() for b in batches]
        return ok(data, count=len(data))

    @app.route('/api/batches', methods=['POST'])
    def api_create_batch():
        """Record a batch; ingredient usage is snapshotted at this point."""
        data = json_body()
        ingredients = data.get('ingredients')
        if ingredients is not None and not isinstance(ingredients, list):
            raise BadRequest('ingredients must be a list')
        batch = get_db().create_production_batch(
            number(data, 'quantity_produced'),
            product_id=optional_int(data, 'product_id'),
            recipe_id=optional_int(data, 'recipe_id'),
            production_date=data.get('production_date'),
            staff_name=data.get('staff_name') or '',
            notes=data.get('notes') or '',
            ingredients=ingredients,
        )
        current_app.logger.info("Batch %s recorded via API", batch.id)
        return ok(batch.to_dict(), 201)

    @app.route('/api/batches/<int:batch_id>', methods=['GET'])
    def api_get_batch(batch_id):
        batch = get_db().get_production_batch(batch_id)
        if not batch:
            return fail('Batch not found', 404)
        return ok(batch.to_dict())

    @app.route('/api/batches/<int:batch_id>', methods=['DELETE'])
    def api_delete_batch(batch_id):
        if not get_db().delete_production_batch(batch_id):
            return fail('Batch not found', 404)
        return ok({'id': batch_id})

    @app.route('/api/analytics/production', methods=['GET'])
    def api_production_analytics():
        end_date = request.args.get('date')
        days = optional_int(request.args, 'days')
        days = 7 if days is None else days
        db = get_db()
        return ok({
            'days': days,
            'daily_totals': db.daily_production_totals(end_date, days),
            'staff_stats': db.staff_production_stats(end_date, days),
        })

    # POS

    @app.route('/api/pos/quote', methods=['POST'])
    def api_pos_quote():
        data = json_body()
        lines = data.get('lines')
        if not isinstance(lines, list):
            raise BadRequest('lines must be a list')
        pairs = []
        for line in lines:
            if not isinstance(line, dict):
                raise BadRequest('each line needs unit_price and quantity')
            pairs.append((number(line, 'unit_price'), number(line, 'quantity')))
        quote = costing.quote_sale(pairs, current_app.config['POS_TAX_RATE'],
                                   number(data, 'discount', default=0))
        result = quote.to_dict()
        result['total_display'] = costing.format_currency(quote.total,
                                                          current_app.config['CURRENCY_SYMBOL'])
        return ok(result)


def create_app(config: Optional[Mapping[str, Any]] = None) -> Flask:
    """Build the Flask app. Config: defaults, then RETAIL_OPS_* env vars, then `config`."""
    app = Flask(__name__)
    app.config.from_mapping(DEFAULT_CONFIG)
    app.config.from_prefixed_env('RETAIL_OPS')
    if config:
        app.config.from_mapping(config)

    app.extensions['retail_ops_db'] = DatabaseManager(app.config['DATABASE'])
    register_error_handlers(app)
    register_routes(app)
    app.logger.info("Retail Ops API using database %s", app.config['DATABASE'])
    return app


if __name__ == '__main__':
    app = create_app()
    print("🥖 Starting Retail Ops API...")
    print("📁 Database:", app.config['DATABASE'])
    print("🌐 Open your browser to: http://localhost:5000/api/")
    app.run(debug=True, host='0.0.0.0', port=5000)
