#!/usr/bin/env python3
"""
Retail Ops - Production Costing
===============================
Ingredients bought in packs, recipes built from them, and production batches
that scale a recipe to what was actually made. Batch ingredient usage is
snapshotted when the batch is recorded so later recipe edits never change
historical costs.

Includes the sqlite persistence layer and a small terminal front end.
"""

import argparse
import logging
import math
import sqlite3
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, asdict, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Any

from tabulate import tabulate

import costing
from costing import (
    CostingError,
    InvalidQuantityError,
    InvalidRecipeError,
    format_currency,
    format_unit_cost,
)

__version__ = "1.0.0"

DEFAULT_INGREDIENT_TAX_RATE = 0.14
DEFAULT_POS_TAX_RATE = 0.15

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    """Raised when an operation needs a row that does not exist."""


@dataclass
class Ingredient:
    """An ingredient as purchased: one pack of a given size and price."""
    id: Optional[int]
    name: str
    pack_size: float
    pack_unit: str
    pack_price: float
    price_includes_tax: bool = False
    barcode: str = ""
    notes: str = ""

    def __post_init__(self):
        self.price_includes_tax = bool(self.price_includes_tax)

    def tax(self, rate: float) -> costing.TaxBreakdown:
        return costing.tax_breakdown(self.pack_price, rate, self.price_includes_tax)

    def to_dict(self, tax_rate: float) -> Dict[str, Any]:
        data = asdict(self)
        data.update(self.tax(tax_rate).to_dict())
        return data


@dataclass
class Product:
    """A sellable product that production batches are recorded against."""
    id: Optional[int]
    name: str
    code: str


@dataclass
class Recipe:
    """A recipe yields batch_size batch_units per batch."""
    id: Optional[int]
    name: str
    batch_size: float
    batch_unit: str = "units"
    description: str = ""


@dataclass
class RecipeIngredient:
    """A recipe line. The pack specification is copied in when the line is added."""
    id: Optional[int]
    recipe_id: int
    ingredient_name: str
    pack_size: float
    pack_unit: str
    pack_price: float
    used_quantity: float
    used_unit: str
    ingredient_id: Optional[int] = None

    @property
    def cost_per_used_unit(self) -> float:
        return costing.cost_per_used_unit(self.pack_size, self.pack_price,
                                          self.pack_unit, self.used_unit)

    @property
    def calculated_cost(self) -> float:
        return self.cost_per_used_unit * self.used_quantity

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['cost_per_used_unit'] = self.cost_per_used_unit
        data['calculated_cost'] = self.calculated_cost
        return data


@dataclass
class ProductionBatch:
    """A recorded production run. Cost fields are frozen at creation."""
    id: Optional[int]
    product_id: Optional[int]
    recipe_id: Optional[int]
    recipe_name: Optional[str]
    quantity_produced: float
    production_date: str
    staff_name: str = ""
    notes: str = ""
    scaling_factor: Optional[float] = None
    total_ingredient_cost: float = 0.0
    cost_per_unit: float = 0.0
    created_at: Optional[str] = None
    ingredients: List["ProductionIngredient"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProductionIngredient:
    """Snapshot row of ingredient usage for one batch."""
    id: Optional[int]
    batch_id: int
    ingredient_name: str
    quantity_used: float
    unit: str
    cost_per_unit: float
    total_cost: float
    pack_size: Optional[float] = None
    pack_unit: Optional[str] = None
    pack_price: Optional[float] = None


def _as_number(value: Any, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidQuantityError(f"{label} must be a number (got {value!r})")
    if not math.isfinite(number):
        raise InvalidQuantityError(f"{label} must be a finite number (got {value!r})")
    return number


def _parse_date(value: Optional[str]) -> str:
    if value is None or value == "":
        return date.today().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError:
        raise InvalidQuantityError(f"Invalid date '{value}', expected YYYY-MM-DD")


class DatabaseManager:
    """Manages all database operations for the retail ops system."""

    INGREDIENT_COLUMNS = ("id, name, pack_size, pack_unit, pack_price, "
                          "price_includes_tax, barcode, notes")
    RECIPE_INGREDIENT_COLUMNS = ("id, recipe_id, ingredient_name, pack_size, pack_unit, "
                                 "pack_price, used_quantity, used_unit, ingredient_id")
    BATCH_COLUMNS = ("id, product_id, recipe_id, recipe_name, quantity_produced, "
                     "production_date, staff_name, notes, scaling_factor, "
                     "total_ingredient_cost, cost_per_unit, created_at")
    BATCH_INGREDIENT_COLUMNS = ("id, batch_id, ingredient_name, quantity_used, unit, "
                                "cost_per_unit, total_cost, pack_size, pack_unit, pack_price")

    def __init__(self, db_path: str = "retail_ops.db"):
        self.db_path = str(db_path)
        self._init_database()

    @contextmanager
    def _connect(self):
        """Connection that commits on success, rolls back on error, and closes."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_database(self):
        """Initialize the database with the canonical schema."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ingredients (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    pack_size REAL NOT NULL CHECK (pack_size > 0),
                    pack_unit TEXT NOT NULL,
                    pack_price REAL NOT NULL CHECK (pack_price >= 0),
                    price_includes_tax INTEGER NOT NULL DEFAULT 0,
                    barcode TEXT DEFAULT '',
                    notes TEXT DEFAULT '',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS products (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    code TEXT UNIQUE NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS recipes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    batch_size REAL NOT NULL CHECK (batch_size > 0),
                    batch_unit TEXT NOT NULL DEFAULT 'units',
                    description TEXT DEFAULT '',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS recipe_ingredients (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipe_id INTEGER NOT NULL,
                    ingredient_id INTEGER,
                    ingredient_name TEXT NOT NULL,
                    pack_size REAL NOT NULL,
                    pack_unit TEXT NOT NULL,
                    pack_price REAL NOT NULL,
                    used_quantity REAL NOT NULL,
                    used_unit TEXT NOT NULL,
                    FOREIGN KEY (recipe_id) REFERENCES recipes(id) ON DELETE CASCADE,
                    FOREIGN KEY (ingredient_id) REFERENCES ingredients(id) ON DELETE SET NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS production_batches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    product_id INTEGER,
                    recipe_id INTEGER,
                    recipe_name TEXT,
                    quantity_produced REAL NOT NULL,
                    production_date TEXT NOT NULL,
                    staff_name TEXT NOT NULL DEFAULT '',
                    notes TEXT DEFAULT '',
                    scaling_factor REAL,
                    total_ingredient_cost REAL NOT NULL DEFAULT 0,
                    cost_per_unit REAL NOT NULL DEFAULT 0,
                    snapshot_written_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE SET NULL,
                    FOREIGN KEY (recipe_id) REFERENCES recipes(id) ON DELETE SET NULL
                )
            """)

            # Ingredient usage snapshot, written once per batch
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS production_ingredients (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    batch_id INTEGER NOT NULL,
                    ingredient_name TEXT NOT NULL,
                    quantity_used REAL NOT NULL,
                    unit TEXT NOT NULL,
                    cost_per_unit REAL NOT NULL,
                    total_cost REAL NOT NULL,
                    pack_size REAL,
                    pack_unit TEXT,
                    pack_price REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (batch_id) REFERENCES production_batches(id) ON DELETE CASCADE
                )
            """)

            # Databases created before snapshot_written_at existed
            cursor.execute("PRAGMA table_info(production_batches)")
            columns = [col[1] for col in cursor.fetchall()]
            if 'snapshot_written_at' not in columns:
                logger.info("Adding snapshot_written_at to production_batches")
                cursor.execute("ALTER TABLE production_batches ADD COLUMN snapshot_written_at TIMESTAMP")
                cursor.execute("UPDATE production_batches SET snapshot_written_at = COALESCE(created_at, CURRENT_TIMESTAMP)")

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_batches_date
                ON production_batches (production_date)
            """)

    # Ingredient Management Methods

    @staticmethod
    def _validate_ingredient(ingredient: Ingredient):
        if not ingredient.name or not ingredient.name.strip():
            raise InvalidQuantityError("Ingredient name cannot be empty")
        ingredient.pack_unit = costing.normalize_unit(ingredient.pack_unit)
        # Rejects a non-positive pack size and a negative price
        costing.cost_per_base_unit(ingredient.pack_size, ingredient.pack_price)

    def add_ingredient(self, ingredient: Ingredient) -> int:
        """Add a new ingredient and return its id."""
        self._validate_ingredient(ingredient)
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO ingredients (name, pack_size, pack_unit, pack_price,
                                         price_includes_tax, barcode, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (ingredient.name.strip(), ingredient.pack_size, ingredient.pack_unit,
                  ingredient.pack_price, int(ingredient.price_includes_tax),
                  ingredient.barcode, ingredient.notes))
            ingredient.id = cursor.lastrowid
        logger.info("Added ingredient %s (id=%s)", ingredient.name, ingredient.id)
        return ingredient.id

    def get_ingredients(self, search: str = None) -> List[Ingredient]:
        """Get all ingredients, optionally filtered by a name fragment."""
        with self._connect() as conn:
            if search:
                rows = conn.execute(
                    f"SELECT {self.INGREDIENT_COLUMNS} FROM ingredients "
                    "WHERE lower(name) LIKE ? ORDER BY name, id",
                    (f"%{search.strip().lower()}%",)
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {self.INGREDIENT_COLUMNS} FROM ingredients ORDER BY name, id"
                ).fetchall()
            return [Ingredient(**dict(row)) for row in rows]

    def get_ingredient(self, ingredient_id: int) -> Optional[Ingredient]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self.INGREDIENT_COLUMNS} FROM ingredients WHERE id = ?",
                (ingredient_id,)
            ).fetchone()
            return Ingredient(**dict(row)) if row else None

    def update_ingredient(self, ingredient_id: int, ingredient: Ingredient) -> bool:
        """Update an ingredient. Existing recipe lines keep the pack data they copied."""
        self._validate_ingredient(ingredient)
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE ingredients
                SET name = ?, pack_size = ?, pack_unit = ?, pack_price = ?,
                    price_includes_tax = ?, barcode = ?, notes = ?
                WHERE id = ?
            """, (ingredient.name.strip(), ingredient.pack_size, ingredient.pack_unit,
                  ingredient.pack_price, int(ingredient.price_includes_tax),
                  ingredient.barcode, ingredient.notes, ingredient_id))
            return cursor.rowcount > 0

    def delete_ingredient(self, ingredient_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM ingredients WHERE id = ?", (ingredient_id,))
            return cursor.rowcount > 0

    # Product Management Methods

    def add_product(self, product: Product) -> Optional[int]:
        """Add a product; returns None when the code is already taken."""
        if not product.name or not product.name.strip():
            raise InvalidQuantityError("Product name cannot be empty")
        if not product.code or not product.code.strip():
            raise InvalidQuantityError("Product code cannot be empty")
        existing = [asdict(p) for p in self.get_products()]
        if costing.find_by_code(product.code, existing):
            logger.warning("Product code %s already exists", product.code)
            return None
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO products (name, code) VALUES (?, ?)",
                    (product.name.strip(), product.code.strip())
                )
                product.id = cursor.lastrowid
                return product.id
        except sqlite3.IntegrityError:
            return None

    def get_products(self) -> List[Product]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, name, code FROM products ORDER BY name, id").fetchall()
            return [Product(**dict(row)) for row in rows]

    def get_product(self, product_id: int) -> Optional[Product]:
        with self._connect() as conn:
            row = conn.execute("SELECT id, name, code FROM products WHERE id = ?",
                               (product_id,)).fetchone()
            return Product(**dict(row)) if row else None

    def delete_product(self, product_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM products WHERE id = ?", (product_id,))
            return cursor.rowcount > 0

    # Recipe Management Methods

    @staticmethod
    def _validate_recipe(recipe: Recipe):
        if not recipe.name or not recipe.name.strip():
            raise InvalidRecipeError("Recipe name cannot be empty")
        batch_size = _as_number(recipe.batch_size, "Recipe batch size")
        if batch_size <= 0:
            raise InvalidRecipeError(
                f"Recipe batch size must be greater than zero (got {recipe.batch_size})"
            )

    def add_recipe(self, recipe: Recipe) -> int:
        """Add a new recipe and return its id."""
        self._validate_recipe(recipe)
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO recipes (name, batch_size, batch_unit, description)
                VALUES (?, ?, ?, ?)
            """, (recipe.name.strip(), recipe.batch_size, recipe.batch_unit or "units",
                  recipe.description))
            recipe.id = cursor.lastrowid
        logger.info("Added recipe %s (id=%s)", recipe.name, recipe.id)
        return recipe.id

    def get_recipes(self) -> List[Recipe]:
        """Get all recipes."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, batch_size, batch_unit, description FROM recipes ORDER BY name, id"
            ).fetchall()
            return [Recipe(**dict(row)) for row in rows]

    def get_recipe(self, recipe_id: int) -> Optional[Recipe]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, batch_size, batch_unit, description FROM recipes WHERE id = ?",
                (recipe_id,)
            ).fetchone()
            return Recipe(**dict(row)) if row else None

    def update_recipe(self, recipe_id: int, recipe: Recipe) -> bool:
        """Update an existing recipe. Recorded batches are not touched."""
        self._validate_recipe(recipe)
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE recipes
                SET name = ?, batch_size = ?, batch_unit = ?, description = ?
                WHERE id = ?
            """, (recipe.name.strip(), recipe.batch_size, recipe.batch_unit or "units",
                  recipe.description, recipe_id))
            return cursor.rowcount > 0

    def delete_recipe(self, recipe_id: int) -> bool:
        """Delete a recipe and its lines. Batches keep their snapshot and recipe name."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM recipes WHERE id = ?", (recipe_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted recipe id=%s", recipe_id)
        return deleted

    def _require_recipe(self, recipe_id: int) -> Recipe:
        recipe = self.get_recipe(recipe_id)
        if recipe is None:
            raise RecordNotFoundError(f"Recipe {recipe_id} not found")
        return recipe

    # Recipe Ingredient Methods

    @staticmethod
    def _validate_recipe_ingredient(line: RecipeIngredient):
        if not line.ingredient_name or not line.ingredient_name.strip():
            raise InvalidQuantityError("Ingredient name cannot be empty")
        line.pack_unit = costing.normalize_unit(line.pack_unit)
        line.used_unit = costing.normalize_unit(line.used_unit)
        # Validates sizes, prices and that the used unit is convertible
        costing.total_cost(line.pack_size, line.pack_price, line.pack_unit,
                           line.used_quantity, line.used_unit)

    def add_recipe_ingredient(self, line: RecipeIngredient) -> int:
        """Add a line to a recipe and return its id."""
        self._require_recipe(line.recipe_id)
        self._validate_recipe_ingredient(line)
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO recipe_ingredients
                (recipe_id, ingredient_id, ingredient_name, pack_size, pack_unit,
                 pack_price, used_quantity, used_unit)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (line.recipe_id, line.ingredient_id, line.ingredient_name.strip(),
                  line.pack_size, line.pack_unit, line.pack_price,
                  line.used_quantity, line.used_unit))
            line.id = cursor.lastrowid
            return line.id

    def add_ingredient_to_recipe(self, recipe_id: int, ingredient_id: int,
                                 used_quantity: float, used_unit: str,
                                 tax_rate: float) -> RecipeIngredient:
        """Add a recipe line priced from a stored ingredient.

        The ingredient's tax-exclusive pack price is copied so the line keeps
        its cost basis if the ingredient is edited later.
        """
        ingredient = self.get_ingredient(ingredient_id)
        if ingredient is None:
            raise RecordNotFoundError(f"Ingredient {ingredient_id} not found")
        line = RecipeIngredient(
            id=None,
            recipe_id=recipe_id,
            ingredient_name=ingredient.name,
            pack_size=ingredient.pack_size,
            pack_unit=ingredient.pack_unit,
            pack_price=ingredient.tax(tax_rate).price_ex_tax,
            used_quantity=used_quantity,
            used_unit=used_unit,
            ingredient_id=ingredient.id,
        )
        self.add_recipe_ingredient(line)
        return line

    def get_recipe_ingredients(self, recipe_id: int) -> List[RecipeIngredient]:
        """Get all lines for a specific recipe."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self.RECIPE_INGREDIENT_COLUMNS} FROM recipe_ingredients "
                "WHERE recipe_id = ? ORDER BY ingredient_name, id",
                (recipe_id,)
            ).fetchall()
            return [RecipeIngredient(**dict(row)) for row in rows]

    def get_recipe_ingredient(self, line_id: int) -> Optional[RecipeIngredient]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self.RECIPE_INGREDIENT_COLUMNS} FROM recipe_ingredients WHERE id = ?",
                (line_id,)
            ).fetchone()
            return RecipeIngredient(**dict(row)) if row else None

    def update_recipe_ingredient(self, line_id: int, **changes) -> RecipeIngredient:
        """Update fields of a recipe line and return the updated line."""
        line = self.get_recipe_ingredient(line_id)
        if line is None:
            raise RecordNotFoundError(f"Recipe ingredient {line_id} not found")
        editable = ("ingredient_name", "pack_size", "pack_unit", "pack_price",
                    "used_quantity", "used_unit")
        for key, value in changes.items():
            if key not in editable:
                raise InvalidQuantityError(f"Field '{key}' cannot be changed")
            setattr(line, key, value)
        self._validate_recipe_ingredient(line)
        with self._connect() as conn:
            conn.execute("""
                UPDATE recipe_ingredients
                SET ingredient_name = ?, pack_size = ?, pack_unit = ?, pack_price = ?,
                    used_quantity = ?, used_unit = ?
                WHERE id = ?
            """, (line.ingredient_name.strip(), line.pack_size, line.pack_unit,
                  line.pack_price, line.used_quantity, line.used_unit, line_id))
        return line

    def delete_recipe_ingredient(self, line_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM recipe_ingredients WHERE id = ?", (line_id,))
            return cursor.rowcount > 0

    def calculate_recipe_cost(self, recipe_id: int) -> Dict[str, Any]:
        """Calculate the total cost and cost per batch unit for a recipe."""
        recipe = self._require_recipe(recipe_id)
        lines = self.get_recipe_ingredients(recipe_id)
        total = costing.recipe_total_cost(lines)
        return {
            'recipe_id': recipe.id,
            'recipe_name': recipe.name,
            'batch_size': recipe.batch_size,
            'batch_unit': recipe.batch_unit,
            'total_cost': total,
            'cost_per_unit': costing.cost_per_batch_unit(lines, recipe.batch_size),
            'ingredient_breakdown': [line.to_dict() for line in lines],
        }

    def scale_recipe(self, recipe_id: int, target_quantity: float) -> Dict[str, Any]:
        """Scale a recipe to target_quantity without recording anything."""
        recipe = self._require_recipe(recipe_id)
        lines = self.get_recipe_ingredients(recipe_id)
        scaled = costing.scale_ingredients(lines, recipe.batch_size, target_quantity)
        total = sum(item.scaled_cost for item in scaled)
        return {
            'recipe_id': recipe.id,
            'recipe_name': recipe.name,
            'batch_size': recipe.batch_size,
            'batch_unit': recipe.batch_unit,
            'target_quantity': float(target_quantity),
            'scaling_factor': costing.scaling_factor(recipe.batch_size, target_quantity),
            'total_cost': total,
            'cost_per_unit': costing.cost_per_unit(lines, recipe.batch_size, target_quantity),
            'ingredients': [
                {
                    'ingredient_name': item.ingredient.ingredient_name,
                    'original_quantity': item.ingredient.used_quantity,
                    'scaled_quantity': item.scaled_quantity,
                    'unit': item.ingredient.used_unit,
                    'original_cost': item.ingredient.calculated_cost,
                    'scaled_cost': item.scaled_cost,
                }
                for item in scaled
            ],
        }

    # Production Batch Methods

    @staticmethod
    def _snapshot_rows(scaled: List[costing.ScaledIngredient]) -> List[Dict[str, Any]]:
        rows = []
        for item in scaled:
            line = item.ingredient
            rows.append({
                'ingredient_name': line.ingredient_name,
                'quantity_used': item.scaled_quantity,
                'unit': line.used_unit,
                'cost_per_unit': line.cost_per_used_unit,
                'total_cost': item.scaled_cost,
                'pack_size': line.pack_size,
                'pack_unit': line.pack_unit,
                'pack_price': line.pack_price,
            })
        return rows

    @staticmethod
    def _manual_rows(ingredients: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        rows = []
        for item in ingredients:
            if not isinstance(item, dict):
                raise InvalidQuantityError(f"Ingredient usage must be an object (got {item!r})")
            name = str(item.get('ingredient_name') or "").strip()
            if not name:
                raise InvalidQuantityError("Ingredient name cannot be empty")
            quantity = _as_number(item.get('quantity_used', 0), f"Quantity used for {name}")
            unit_cost = _as_number(item.get('cost_per_unit', 0), f"Cost per unit for {name}")
            if quantity < 0 or unit_cost < 0:
                raise InvalidQuantityError(f"Negative quantity or cost for {name}")
            pack_size = item.get('pack_size')
            pack_price = item.get('pack_price')
            pack_unit = item.get('pack_unit')
            rows.append({
                'ingredient_name': name,
                'quantity_used': quantity,
                'unit': costing.normalize_unit(item.get('unit', 'g')),
                'cost_per_unit': unit_cost,
                'total_cost': quantity * unit_cost,
                'pack_size': None if pack_size is None else _as_number(pack_size, "Pack size"),
                'pack_unit': None if pack_unit is None else costing.normalize_unit(pack_unit),
                'pack_price': None if pack_price is None else _as_number(pack_price, "Pack price"),
            })
        return rows

    @staticmethod
    def _insert_snapshot(conn: sqlite3.Connection, batch_id: int,
                         rows: List[Dict[str, Any]]) -> bool:
        written = conn.execute(
            "SELECT snapshot_written_at FROM production_batches WHERE id = ?", (batch_id,)
        ).fetchone()
        if written is None:
            raise RecordNotFoundError(f"Production batch {batch_id} not found")
        if written['snapshot_written_at'] is not None:
            logger.debug("Batch %s already has a snapshot, leaving it untouched", batch_id)
            return False
        conn.executemany("""
            INSERT INTO production_ingredients
            (batch_id, ingredient_name, quantity_used, unit, cost_per_unit, total_cost,
             pack_size, pack_unit, pack_price)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [(batch_id, r['ingredient_name'], r['quantity_used'], r['unit'],
               r['cost_per_unit'], r['total_cost'], r['pack_size'], r['pack_unit'],
               r['pack_price']) for r in rows])
        # An empty snapshot still counts as written
        conn.execute(
            "UPDATE production_batches SET snapshot_written_at = CURRENT_TIMESTAMP WHERE id = ?",
            (batch_id,)
        )
        return True

    def write_batch_snapshot(self, batch_id: int,
                             scaled: List[costing.ScaledIngredient]) -> bool:
        """Persist scaled usage for a batch; a no-op if the batch already has one."""
        with self._connect() as conn:
            return self._insert_snapshot(conn, batch_id, self._snapshot_rows(scaled))

    def create_production_batch(self, quantity_produced: float, product_id: int = None,
                                recipe_id: int = None, production_date: str = None,
                                staff_name: str = "", notes: str = "",
                                ingredients: List[Dict[str, Any]] = None) -> ProductionBatch:
        """Record a production batch and snapshot its ingredient usage.

        With a recipe, the recipe lines are scaled by
        quantity_produced / batch_size. Without one, `ingredients` lists the
        usage directly (ingredient_name, quantity_used, unit, cost_per_unit).
        """
        production_date = _parse_date(production_date)
        quantity_produced = _as_number(quantity_produced, "Quantity produced")
        if quantity_produced < 0:
            raise InvalidQuantityError(
                f"Quantity produced cannot be negative (got {quantity_produced})"
            )
        if product_id is not None and self.get_product(product_id) is None:
            raise RecordNotFoundError(f"Product {product_id} not found")

        recipe_name = None
        factor = None
        if recipe_id is not None:
            recipe = self._require_recipe(recipe_id)
            recipe_name = recipe.name
            lines = self.get_recipe_ingredients(recipe_id)
            scaled = costing.scale_ingredients(lines, recipe.batch_size, quantity_produced)
            factor = costing.scaling_factor(recipe.batch_size, quantity_produced)
            rows = self._snapshot_rows(scaled)
            total = sum(item.scaled_cost for item in scaled)
            unit_cost = costing.cost_per_unit(lines, recipe.batch_size, quantity_produced)
        else:
            rows = self._manual_rows(ingredients or [])
            total = sum(r['total_cost'] for r in rows)
            unit_cost = total / quantity_produced if quantity_produced > 0 else 0.0

        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO production_batches
                (product_id, recipe_id, recipe_name, quantity_produced, production_date,
                 staff_name, notes, scaling_factor, total_ingredient_cost, cost_per_unit)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (product_id, recipe_id, recipe_name, quantity_produced, production_date,
                  staff_name or "", notes or "", factor, total, unit_cost))
            batch_id = cursor.lastrowid
            self._insert_snapshot(conn, batch_id, rows)

        logger.info("Recorded batch %s: %s units of %s, cost %.2f",
                    batch_id, quantity_produced, recipe_name or "manual usage", total)
        return self.get_production_batch(batch_id)

    def get_production_batch(self, batch_id: int) -> Optional[ProductionBatch]:
        """Get a batch together with its ingredient snapshot."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self.BATCH_COLUMNS} FROM production_batches WHERE id = ?",
                (batch_id,)
            ).fetchone()
            if not row:
                return None
            batch = ProductionBatch(**dict(row))
            batch.ingredients = self._batch_ingredients(conn, batch_id)
            return batch

    def _batch_ingredients(self, conn: sqlite3.Connection,
                           batch_id: int) -> List[ProductionIngredient]:
        rows = conn.execute(
            f"SELECT {self.BATCH_INGREDIENT_COLUMNS} FROM production_ingredients "
            "WHERE batch_id = ? ORDER BY id",
            (batch_id,)
        ).fetchall()
        return [ProductionIngredient(**dict(row)) for row in rows]

    def get_batch_ingredients(self, batch_id: int) -> List[ProductionIngredient]:
        with self._connect() as conn:
            return self._batch_ingredients(conn, batch_id)

    def get_production_batches(self, production_date: str = None) -> List[ProductionBatch]:
        """Batches for a date (all batches if no date), newest first."""
        with self._connect() as conn:
            if production_date:
                rows = conn.execute(
                    f"SELECT {self.BATCH_COLUMNS} FROM production_batches "
                    "WHERE production_date = ? ORDER BY created_at DESC, id DESC",
                    (_parse_date(production_date),)
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {self.BATCH_COLUMNS} FROM production_batches "
                    "ORDER BY production_date DESC, id DESC"
                ).fetchall()
            return [ProductionBatch(**dict(row)) for row in rows]

    def delete_production_batch(self, batch_id: int) -> bool:
        """Delete a batch; its snapshot rows go with it."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM production_batches WHERE id = ?", (batch_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted production batch id=%s", batch_id)
        return deleted

    # Analytics Methods

    def suggest_default_recipe(self, product_id: int) -> Optional[Recipe]:
        """Most used recipe across the product's 10 latest batches that had one."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT recipe_id FROM production_batches
                WHERE product_id = ? AND recipe_id IS NOT NULL
                ORDER BY created_at DESC, id DESC
                LIMIT 10
            """, (product_id,)).fetchall()
        if not rows:
            return None
        # Ties go to the most recently used recipe
        recipe_id, _ = Counter(row['recipe_id'] for row in rows).most_common(1)[0]
        return self.get_recipe(recipe_id)

    @staticmethod
    def _window(end_date: str, days: int):
        end = date.fromisoformat(_parse_date(end_date))
        if int(days) < 0:
            raise InvalidQuantityError(f"Days cannot be negative (got {days})")
        start = end - timedelta(days=int(days))
        return start.isoformat(), end.isoformat()

    def daily_production_totals(self, end_date: str = None, days: int = 7) -> List[Dict[str, Any]]:
        """Units produced per day from end_date - days to end_date inclusive."""
        start, end = self._window(end_date, days)
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT production_date, SUM(quantity_produced) AS total_production
                FROM production_batches
                WHERE production_date BETWEEN ? AND ?
                GROUP BY production_date
                ORDER BY production_date
            """, (start, end)).fetchall()
        return [{'date': row['production_date'], 'total_production': row['total_production']}
                for row in rows]

    def staff_production_stats(self, end_date: str = None, days: int = 7) -> List[Dict[str, Any]]:
        """Batches and units per staff member in the window, most units first."""
        start, end = self._window(end_date, days)
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT staff_name, COUNT(*) AS total_batches,
                       SUM(quantity_produced) AS total_units
                FROM production_batches
                WHERE production_date BETWEEN ? AND ?
                GROUP BY staff_name
                ORDER BY total_units DESC, staff_name
            """, (start, end)).fetchall()
        return [dict(row) for row in rows]


class RetailOpsSystem:
    """Terminal front end for costing recipes and recording batches."""

    def __init__(self, db: DatabaseManager, ingredient_tax_rate: float = DEFAULT_INGREDIENT_TAX_RATE,
                 currency: str = "R"):
        self.db = db
        self.tax_rate = ingredient_tax_rate
        self.currency = currency
        self.commands = {
            '01': self.list_recipes,
            '02': self.add_recipe,
            '03': self.calculate_recipe_cost,
            '04': self.scale_recipe,
            '11': self.add_ingredient,
            '12': self.list_ingredients,
            '13': self.search_ingredients,
            '21': self.add_recipe_ingredient,
            '31': self.record_batch,
            '32': self.list_batches,
            '41': self.convert_units,
            '99': self.show_help
        }

    def money(self, value: float) -> str:
        return format_currency(value, self.currency)

    def run(self):
        """Main application loop."""
        print(f"🥖 Retail Ops Production Costing v{__version__}")
        print("=" * 50)
        self.show_help()

        while True:
            try:
                command = input("\n📋 Enter command (99 for help, 'quit' to exit): ").strip()

                if command.lower() in ['quit', 'exit', 'q']:
                    print("👋 Goodbye!")
                    break

                if command in self.commands:
                    self.commands[command]()
                else:
                    print("❌ Invalid command. Type '99' for help.")

            except (KeyboardInterrupt, EOFError):
                print("\n👋 Goodbye!")
                break
            except (CostingError, RecordNotFoundError) as e:
                print(f"❌ {e}")
            except Exception as e:
                logger.exception("Menu command failed")
                print(f"❌ Error: {e}")

    def show_help(self):
        """Display available commands."""
        help_text = """
📖 Available Commands:
┌─────────────────────────────────────────────────────────────┐
│ RECIPES                                                     │
│ 01 - List recipes             02 - Add recipe              │
│ 03 - Recipe cost              04 - Scale recipe            │
│                                                             │
│ INGREDIENTS                                                 │
│ 11 - Add ingredient           12 - List ingredients        │
│ 13 - Search ingredients                                     │
│                                                             │
│ RECIPE INGREDIENTS                                          │
│ 21 - Add ingredient to recipe                               │
│                                                             │
│ PRODUCTION                                                  │
│ 31 - Record production batch  32 - Batches for a date      │
│                                                             │
│ TOOLS                                                       │
│ 41 - Convert units            99 - Show this help menu     │
└─────────────────────────────────────────────────────────────┘
        """
        print(help_text)

    def _ask_id(self, prompt: str) -> Optional[int]:
        try:
            return int(input(prompt).strip())
        except ValueError:
            print("❌ Please enter a numeric id")
            return None

    def list_recipes(self):
        """List all recipes with their cost per batch unit."""
        recipes = self.db.get_recipes()
        if not recipes:
            print("📭 No recipes found")
            return

        print(f"\n📚 Found {len(recipes)} recipes:")
        table_data = []
        for recipe in recipes:
            cost = self.db.calculate_recipe_cost(recipe.id)
            table_data.append([
                recipe.id,
                recipe.name,
                f"{recipe.batch_size:g} {recipe.batch_unit}",
                self.money(cost['total_cost']),
                self.money(cost['cost_per_unit']),
            ])
        print(tabulate(table_data,
                       headers=["ID", "Recipe", "Batch", "Batch Cost", "Cost/Unit"],
                       tablefmt="grid"))

    def add_recipe(self):
        """Add a new recipe."""
        print("\n🆕 Add New Recipe")
        name = input("Recipe name: ").strip()
        if not name:
            print("❌ Recipe name cannot be empty")
            return
        try:
            batch_size = float(input("Batch size: "))
            batch_unit = input("Batch unit (default units): ").strip() or "units"
            description = input("Description (optional): ").strip()
        except ValueError:
            print("❌ Invalid input. Please enter numeric values where required.")
            return
        recipe_id = self.db.add_recipe(Recipe(None, name, batch_size, batch_unit, description))
        print(f"✅ Recipe '{name}' added with id {recipe_id}")

    def calculate_recipe_cost(self):
        """Calculate and display recipe cost."""
        recipe_id = self._ask_id("Recipe id: ")
        if recipe_id is None:
            return
        cost_data = self.db.calculate_recipe_cost(recipe_id)

        print(f"\n💰 Cost Analysis for '{cost_data['recipe_name']}'")
        print("=" * 50)
        print(f"Batch: {cost_data['batch_size']:g} {cost_data['batch_unit']}")
        print(f"Total Cost: {self.money(cost_data['total_cost'])}")
        print(f"Cost per Unit: {self.money(cost_data['cost_per_unit'])}")

        print("\n📋 Ingredient Breakdown:")
        table_data = []
        for item in cost_data['ingredient_breakdown']:
            table_data.append([
                item['ingredient_name'],
                f"{item['pack_size']:g} {item['pack_unit']} @ {self.money(item['pack_price'])}",
                f"{item['used_quantity']:g} {item['used_unit']}",
                format_unit_cost(item['cost_per_used_unit'], self.currency),
                self.money(item['calculated_cost'])
            ])
        print(tabulate(table_data,
                       headers=["Ingredient", "Pack", "Used", "Cost/Used Unit", "Cost"],
                       tablefmt="grid"))

    def scale_recipe(self):
        """Scale a recipe to a production quantity."""
        recipe_id = self._ask_id("Recipe id: ")
        if recipe_id is None:
            return
        try:
            target = float(input("Quantity to produce: "))
        except ValueError:
            print("❌ Invalid quantity")
            return
        scaled = self.db.scale_recipe(recipe_id, target)

        print(f"\n📏 Scaled Recipe: '{scaled['recipe_name']}' for {target:g} {scaled['batch_unit']}")
        print(f"Scale Factor: {scaled['scaling_factor']:.2f}x")
        print(f"Total Cost: {self.money(scaled['total_cost'])}")
        print(f"Cost per Unit: {self.money(scaled['cost_per_unit'])}")
        table_data = [
            [item['ingredient_name'], f"{item['scaled_quantity']:.2f} {item['unit']}",
             self.money(item['scaled_cost'])]
            for item in scaled['ingredients']
        ]
        print(tabulate(table_data, headers=["Ingredient", "Quantity", "Cost"], tablefmt="grid"))

    def add_ingredient(self):
        """Add a new ingredient."""
        print("\n🥕 Add New Ingredient")
        name = input("Ingredient name: ").strip().title()
        if not name:
            print("❌ Ingredient name cannot be empty")
            return
        try:
            pack_size = float(input("Pack size: "))
            pack_unit = input("Pack unit (kg, g, l, ml, unit): ").strip()
            pack_price = float(input("Pack price: "))
        except ValueError:
            print("❌ Invalid input. Please enter numeric values where required.")
            return
        includes_tax = input("Price includes VAT? (y/N): ").strip().lower() in ('y', 'yes')

        similar = costing.find_similar(name, [asdict(i) for i in self.db.get_ingredients()])
        for match in similar:
            print(f"⚠️  Similar ingredient exists: {match['name']} ({match['similarity']:.0%})")

        ingredient = Ingredient(None, name, pack_size, pack_unit, pack_price, includes_tax)
        ingredient_id = self.db.add_ingredient(ingredient)
        tax = ingredient.tax(self.tax_rate)
        print(f"✅ Ingredient '{name}' added with id {ingredient_id} "
              f"(ex VAT {self.money(tax.price_ex_tax)}, VAT {self.money(tax.tax_amount)}, "
              f"total {self.money(tax.total_price)})")

    def _print_ingredients(self, ingredients: List[Ingredient]):
        table_data = []
        for ing in ingredients:
            tax = ing.tax(self.tax_rate)
            table_data.append([
                ing.id,
                ing.name,
                f"{ing.pack_size:g} {ing.pack_unit}",
                self.money(tax.price_ex_tax),
                self.money(tax.tax_amount),
                self.money(tax.total_price),
                format_unit_cost(costing.cost_per_base_unit(ing.pack_size, tax.price_ex_tax),
                                 self.currency) + f"/{ing.pack_unit}",
            ])
        print(tabulate(table_data,
                       headers=["ID", "Ingredient", "Pack", "Ex VAT", "VAT", "Total", "Unit Cost"],
                       tablefmt="grid"))

    def list_ingredients(self):
        """List all ingredients."""
        ingredients = self.db.get_ingredients()
        if not ingredients:
            print("📭 No ingredients found")
            return
        print(f"\n🥘 Found {len(ingredients)} ingredients:")
        self._print_ingredients(ingredients)

    def search_ingredients(self):
        """Search for ingredients by name."""
        keyword = input("Search keyword: ").strip()
        matches = self.db.get_ingredients(search=keyword)
        if not matches:
            print(f"🔍 No ingredients found matching '{keyword}'")
            return
        print(f"\n🔍 Found {len(matches)} ingredients matching '{keyword}':")
        self._print_ingredients(matches)

    def add_recipe_ingredient(self):
        """Add a stored ingredient to a recipe."""
        recipe_id = self._ask_id("Recipe id: ")
        ingredient_id = self._ask_id("Ingredient id: ")
        if recipe_id is None or ingredient_id is None:
            return
        try:
            quantity = float(input("Quantity used: "))
        except ValueError:
            print("❌ Invalid quantity")
            return
        unit = input("Unit: ").strip()
        line = self.db.add_ingredient_to_recipe(recipe_id, ingredient_id, quantity, unit,
                                                self.tax_rate)
        print(f"✅ Added {quantity:g} {line.used_unit} of {line.ingredient_name} "
              f"({self.money(line.calculated_cost)})")

    def record_batch(self):
        """Record a production batch from a recipe."""
        recipe_id = self._ask_id("Recipe id: ")
        if recipe_id is None:
            return
        try:
            quantity = float(input("Quantity produced: "))
        except ValueError:
            print("❌ Invalid quantity")
            return
        staff_name = input("Staff name: ").strip()
        production_date = input("Production date (YYYY-MM-DD, blank for today): ").strip()
        batch = self.db.create_production_batch(quantity, recipe_id=recipe_id,
                                                production_date=production_date or None,
                                                staff_name=staff_name)
        print(f"✅ Batch {batch.id} recorded: {self.money(batch.total_ingredient_cost)} total, "
              f"{self.money(batch.cost_per_unit)} per unit")

    def list_batches(self):
        """List batches recorded on a date."""
        production_date = input("Date (YYYY-MM-DD, blank for today): ").strip() or None
        batches = self.db.get_production_batches(_parse_date(production_date))
        if not batches:
            print("📭 No batches recorded for that date")
            return
        table_data = [
            [b.id, b.recipe_name or "-", f"{b.quantity_produced:g}", b.staff_name,
             self.money(b.total_ingredient_cost), self.money(b.cost_per_unit)]
            for b in batches
        ]
        print(tabulate(table_data,
                       headers=["ID", "Recipe", "Qty", "Staff", "Total", "Cost/Unit"],
                       tablefmt="grid"))

    def convert_units(self):
        """Convert a value between units of the same family."""
        try:
            value = float(input("Value: "))
        except ValueError:
            print("❌ Invalid value")
            return
        from_unit = input("From unit: ").strip()
        to_unit = input("To unit: ").strip()
        result = costing.convert(value, from_unit, to_unit)
        print(f"🔁 {value:g} {costing.normalize_unit(from_unit)} = "
              f"{result:.4f} {costing.normalize_unit(to_unit)}")


def main(argv: List[str] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Retail Ops Production Costing")
    parser.add_argument('--version', action='version', version=f'retail-ops {__version__}')
    parser.add_argument('--db', default='retail_ops.db', help='Database file path')
    parser.add_argument('--ingredient-tax-rate', type=float, default=DEFAULT_INGREDIENT_TAX_RATE,
                        help='VAT rate applied to ingredient prices (default 0.14)')
    parser.add_argument('--currency', default='R', help='Currency symbol for display')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    system = RetailOpsSystem(DatabaseManager(args.db), args.ingredient_tax_rate, args.currency)
    system.run()


if __name__ == "__main__":
    main()
