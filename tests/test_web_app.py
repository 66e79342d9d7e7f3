import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from web_app import create_app


@pytest.fixture
def app(tmp_path):
    return create_app({'TESTING': True, 'DATABASE': str(tmp_path / "api.db")})


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def recipe_id(client):
    resp = client.post('/api/recipes', json={'name': "White Bread", 'batch_size': 50})
    recipe_id = resp.get_json()['data']['id']
    client.post(f'/api/recipes/{recipe_id}/ingredients', json={
        'ingredient_name': "Flour", 'pack_size': 10, 'pack_unit': "kg", 'pack_price': 60,
        'used_quantity': 10, 'used_unit': "kg",
    })
    client.post(f'/api/recipes/{recipe_id}/ingredients', json={
        'ingredient_name': "Butter", 'pack_size': 500, 'pack_unit': "g", 'pack_price': 20,
        'used_quantity': 1, 'used_unit': "kg",
    })
    return recipe_id


def test_api_index(client):
    resp = client.get('/api/')
    assert resp.status_code == 200
    assert 'recipes' in resp.get_json()['available_endpoints']


def test_config_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("RETAIL_OPS_POS_TAX_RATE", "0.2")
    app = create_app({'DATABASE': str(tmp_path / "env.db")})
    assert app.config['POS_TAX_RATE'] == 0.2
    assert app.config['INGREDIENT_TAX_RATE'] == 0.14


def test_units(client):
    data = client.get('/api/units').get_json()['data']
    assert data['units']['kg'] == "mass"
    assert data['base_units']['volume'] == "ml"


def test_convert(client):
    resp = client.post('/api/convert', json={'value': 500, 'from_unit': "g", 'to_unit': "kg"})
    assert resp.status_code == 200
    assert resp.get_json()['data']['result'] == pytest.approx(0.5)


def test_convert_incompatible_units_is_bad_request(client):
    resp = client.post('/api/convert', json={'value': 1, 'from_unit': "kg", 'to_unit': "l"})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body['success'] is False
    assert "Cannot convert" in body['error']


@pytest.mark.parametrize("payload", [
    {'from_unit': "g", 'to_unit': "kg"},
    {'value': "lots", 'from_unit': "g", 'to_unit': "kg"},
])
def test_convert_missing_or_bad_fields(client, payload):
    assert client.post('/api/convert', json=payload).status_code == 400


def test_non_json_body(client):
    resp = client.post('/api/convert', data="value=1", content_type="text/plain")
    assert resp.status_code == 400


def test_ingredient_cost(client):
    resp = client.post('/api/ingredient-cost', json={
        'pack_size': 5, 'pack_unit': "kg", 'pack_price': 45.0,
        'used_quantity': 500, 'used_unit': "g",
    })
    data = resp.get_json()['data']
    assert data['cost_per_pack_unit'] == pytest.approx(9.0)
    assert data['total_cost'] == pytest.approx(4.5)
    assert data['tax']['tax_amount'] == pytest.approx(6.30)
    assert data['tax']['total_price'] == pytest.approx(51.30)


def test_ingredient_cost_zero_pack_size(client):
    resp = client.post('/api/ingredient-cost', json={
        'pack_size': 0, 'pack_unit': "kg", 'pack_price': 45.0,
    })
    assert resp.status_code == 400


def test_ingredient_crud_and_warnings(client):
    resp = client.post('/api/ingredients', json={
        'name': "Cake Flour", 'pack_size': 5, 'pack_unit': "kg", 'pack_price': 45.0,
    })
    assert resp.status_code == 201
    created = resp.get_json()
    assert created['warnings'] == []
    ingredient_id = created['data']['id']
    assert created['data']['total_price'] == pytest.approx(51.30)

    resp = client.post('/api/ingredients', json={
        'name': "Cake Flours", 'pack_size': 1, 'pack_unit': "kg", 'pack_price': 10.0,
    })
    assert resp.status_code == 201
    assert len(resp.get_json()['warnings']) == 1

    resp = client.put(f'/api/ingredients/{ingredient_id}', json={
        'name': "Cake Flour", 'pack_size': 10, 'pack_unit': "kg", 'pack_price': 80.0,
    })
    assert resp.get_json()['data']['pack_price'] == 80.0

    assert client.get('/api/ingredients').get_json()['count'] == 2
    assert client.delete(f'/api/ingredients/{ingredient_id}').status_code == 200
    assert client.get(f'/api/ingredients/{ingredient_id}').status_code == 404


def test_ingredient_missing_field(client):
    resp = client.post('/api/ingredients', json={'name': "Flour", 'pack_unit': "kg"})
    assert resp.status_code == 400
    assert "pack_size" in resp.get_json()['error']


def test_products(client):
    resp = client.post('/api/products', json={'name': "Rye Loaf", 'code': "RYE-01"})
    assert resp.status_code == 201
    resp = client.post('/api/products', json={'name': "Other", 'code': "rye-01"})
    assert resp.status_code == 409
    assert client.get('/api/products').get_json()['count'] == 1


def test_recipe_detail_and_scale(client, recipe_id):
    data = client.get(f'/api/recipes/{recipe_id}').get_json()['data']
    assert data['total_cost'] == pytest.approx(100.0)
    assert data['cost_per_unit'] == pytest.approx(2.0)

    resp = client.post(f'/api/recipes/{recipe_id}/scale', json={'target_quantity': 125})
    data = resp.get_json()['data']
    assert data['scaling_factor'] == pytest.approx(2.5)
    assert data['total_cost'] == pytest.approx(250.0)
    assert data['cost_per_unit'] == pytest.approx(2.0)

    # Scaling never records a batch
    assert client.get('/api/batches').get_json()['count'] == 0


def test_recipe_errors(client, recipe_id):
    assert client.get('/api/recipes/999').status_code == 404
    assert client.post('/api/recipes', json={'name': "Bad", 'batch_size': 0}).status_code == 400
    resp = client.post(f'/api/recipes/{recipe_id}/scale', json={'target_quantity': -5})
    assert resp.status_code == 400
    resp = client.post(f'/api/recipes/{recipe_id}/ingredients', json={
        'ingredient_name': "Milk", 'pack_size': 1, 'pack_unit': "l", 'pack_price': 15,
        'used_quantity': 200, 'used_unit': "g",
    })
    assert resp.status_code == 400


def test_recipe_line_from_stored_ingredient(client, recipe_id):
    ingredient_id = client.post('/api/ingredients', json={
        'name': "Cream", 'pack_size': 1, 'pack_unit': "l", 'pack_price': 57.0,
        'price_includes_tax': True,
    }).get_json()['data']['id']
    resp = client.post(f'/api/recipes/{recipe_id}/ingredients', json={
        'ingredient_id': ingredient_id, 'used_quantity': 250, 'used_unit': "ml",
    })
    assert resp.status_code == 201
    assert resp.get_json()['data']['calculated_cost'] == pytest.approx(12.5)


def test_update_and_delete_recipe_line(client, recipe_id):
    lines = client.get(f'/api/recipes/{recipe_id}').get_json()['data']['ingredient_breakdown']
    flour = next(line for line in lines if line['ingredient_name'] == "Flour")
    resp = client.put(f"/api/recipe-ingredients/{flour['id']}", json={'used_quantity': 5})
    assert resp.get_json()['data']['calculated_cost'] == pytest.approx(30.0)
    assert client.put(f"/api/recipe-ingredients/{flour['id']}", json={}).status_code == 400
    assert client.delete(f"/api/recipe-ingredients/{flour['id']}").status_code == 200
    assert client.delete(f"/api/recipe-ingredients/{flour['id']}").status_code == 404


def test_batch_snapshot_is_immutable(client, recipe_id):
    resp = client.post('/api/batches', json={
        'recipe_id': recipe_id, 'quantity_produced': 125,
        'production_date': "2024-03-01", 'staff_name': "Thandi",
    })
    assert resp.status_code == 201
    batch = resp.get_json()['data']
    assert batch['total_ingredient_cost'] == pytest.approx(250.0)
    assert len(batch['ingredients']) == 2

    client.put(f'/api/recipes/{recipe_id}', json={'name': "White Bread", 'batch_size': 10})
    client.delete(f'/api/recipes/{recipe_id}')

    stored = client.get(f"/api/batches/{batch['id']}").get_json()['data']
    assert stored['recipe_id'] is None
    assert stored['total_ingredient_cost'] == pytest.approx(250.0)
    assert stored['ingredients'] == batch['ingredients']


def test_batches_filtered_by_date(client, recipe_id):
    for day in ("2024-03-01", "2024-03-02"):
        client.post('/api/batches', json={
            'recipe_id': recipe_id, 'quantity_produced': 10, 'production_date': day,
        })
    assert client.get('/api/batches?date=2024-03-01').get_json()['count'] == 1
    assert client.get('/api/batches').get_json()['count'] == 2


def test_batch_errors(client, recipe_id):
    resp = client.post('/api/batches', json={'recipe_id': 999, 'quantity_produced': 10})
    assert resp.status_code == 404
    resp = client.post('/api/batches', json={'recipe_id': recipe_id, 'quantity_produced': -1})
    assert resp.status_code == 400
    assert client.delete('/api/batches/999').status_code == 404


def test_default_recipe(client, recipe_id):
    product_id = client.post('/api/products', json={'name': "Loaf", 'code': "L1"}).get_json()['data']['id']
    assert client.get(f'/api/products/{product_id}/default-recipe').get_json()['data'] is None
    client.post('/api/batches', json={
        'product_id': product_id, 'recipe_id': recipe_id, 'quantity_produced': 10,
    })
    data = client.get(f'/api/products/{product_id}/default-recipe').get_json()['data']
    assert data['id'] == recipe_id
    assert client.get('/api/products/999/default-recipe').status_code == 404


def test_production_analytics(client, recipe_id):
    for staff, qty in (("Sipho", 10), ("Thandi", 30), ("Sipho", 5)):
        client.post('/api/batches', json={
            'recipe_id': recipe_id, 'quantity_produced': qty,
            'production_date': "2024-03-01", 'staff_name': staff,
        })
    data = client.get('/api/analytics/production?date=2024-03-02&days=3').get_json()['data']
    assert data['daily_totals'] == [{'date': "2024-03-01", 'total_production': 45.0}]
    assert [s['staff_name'] for s in data['staff_stats']] == ["Thandi", "Sipho"]


def test_pos_quote_uses_pos_rate(client):
    resp = client.post('/api/pos/quote', json={
        'lines': [{'unit_price': 10, 'quantity': 3}, {'unit_price': 5, 'quantity': 2}],
        'discount': 5,
    })
    data = resp.get_json()['data']
    assert data['tax_rate'] == 0.15
    assert data['total'] == pytest.approx(40.25)
    assert data['total_display'] == "R40.25"


def test_pos_quote_rejects_oversized_discount(client):
    resp = client.post('/api/pos/quote', json={
        'lines': [{'unit_price': 10, 'quantity': 1}], 'discount': 50,
    })
    assert resp.status_code == 400


def test_unknown_route_is_json_404(client):
    resp = client.get('/api/nothing-here')
    assert resp.status_code == 404
    assert resp.get_json()['success'] is False


@pytest.mark.parametrize("bad", ["nan", "inf", "-inf"])
def test_non_finite_numbers_are_bad_requests(client, bad):
    resp = client.post('/api/ingredient-cost', json={
        'pack_size': bad, 'pack_unit': "kg", 'pack_price': 45.0,
    })
    assert resp.status_code == 400
    assert resp.get_json()['success'] is False
    assert client.post('/api/recipes', json={'name': "Odd", 'batch_size': bad}).status_code == 400
    assert client.get('/api/recipes').get_json()['count'] == 0


@pytest.mark.parametrize("usage", [
    [5],
    [{'ingredient_name': "Flour", 'quantity_used': "abc", 'unit': "g", 'cost_per_unit': 0.01}],
])
def test_malformed_manual_batch_is_bad_request(client, usage):
    resp = client.post('/api/batches', json={
        'quantity_produced': 10, 'production_date': "2024-03-01", 'ingredients': usage,
    })
    assert resp.status_code == 400
    assert resp.get_json()['success'] is False
    assert client.get('/api/batches').get_json()['count'] == 0


@pytest.mark.parametrize("value,expected", [
    (True, True), (False, False), ("false", False), ("true", True), ("0", False),
])
def test_price_includes_tax_flag(client, value, expected):
    resp = client.post('/api/ingredients', json={
        'name': "Cream", 'pack_size': 1, 'pack_unit': "l", 'pack_price': 57.0,
        'price_includes_tax': value,
    })
    assert resp.status_code == 201
    assert resp.get_json()['data']['price_includes_tax'] is expected


def test_price_includes_tax_flag_rejects_junk(client):
    resp = client.post('/api/ingredient-cost', json={
        'pack_size': 1, 'pack_unit': "l", 'pack_price': 57.0, 'price_includes_tax': "maybe",
    })
    assert resp.status_code == 400
