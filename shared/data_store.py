"""
JSON-backed inventory data store.

This module gives the monitoring core read access to the data owned by the
CRUD backend: products (stock levels, expiry dates), users (email addresses,
notification subscriptions) and orders. It reads from JSON fixture files.

Design decisions:
- Read-only for the monitoring core (the CRUD backend is the source of truth)
- Lazy loading with in-memory caches, reset via reload()
- Implements InventoryRepository, UserDirectory and StorageProbe so the jobs
  and the dispatcher only ever see the typed interfaces
"""

import json
import logging
from datetime import date
from pathlib import Path
from typing import Optional

from shared.errors import PersistenceError
from shared.models import NotificationType, Order, Product, User
from shared.repositories import InventoryRepository, StorageProbe, UserDirectory

logger = logging.getLogger("data_store")


class DataStore(InventoryRepository, UserDirectory, StorageProbe):
    """
    Loads and serves the product, user and order fixtures.

    In production these queries would go to the relational store; the
    interface the core depends on stays the same.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        """
        Initialize the data store.

        Args:
            data_dir: Path to the directory containing the JSON fixtures.
                     Defaults to ./data relative to project root.
        """
        if data_dir is None:
            data_dir = Path(__file__).parent.parent / "data"

        self.data_dir = Path(data_dir)

        # In-memory caches - loaded lazily
        self._products: Optional[dict[str, Product]] = None
        self._users: Optional[dict[str, User]] = None
        self._orders: Optional[dict[str, Order]] = None

    # =========================================================================
    # Data Loading (lazy)
    # =========================================================================

    def _load_json(self, filename: str) -> list[dict]:
        """Load a JSON fixture file. A missing file is an empty collection."""
        filepath = self.data_dir / filename
        if not filepath.exists():
            return []
        try:
            with open(filepath, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to load {filename}: {e}") from e

    def _ensure_products_loaded(self):
        if self._products is None:
            data = self._load_json("products.json")
            self._products = {p["id"]: Product(**p) for p in data}

    def _ensure_users_loaded(self):
        if self._users is None:
            data = self._load_json("users.json")
            self._users = {u["id"]: User(**u) for u in data}

    def _ensure_orders_loaded(self):
        if self._orders is None:
            data = self._load_json("orders.json")
            self._orders = {o["id"]: Order(**o) for o in data}

    # =========================================================================
    # Product Operations
    # =========================================================================

    def get_product(self, product_id: str) -> Optional[Product]:
        self._ensure_products_loaded()
        return self._products.get(product_id)

    def get_products(self) -> list[Product]:
        self._ensure_products_loaded()
        return list(self._products.values())

    def find_low_stock(self) -> list[Product]:
        """
        Products at or below their reorder point.

        Used by the hourly inventory sweep to raise `inventory:low` events.
        """
        return [p for p in self.get_products() if p.is_low_stock()]

    def find_expiring(self, after: date, until: date) -> list[Product]:
        """Active products expiring in the (after, until] range."""
        return [
            p for p in self.get_products()
            if p.is_active
            and p.expiry_date is not None
            and after < p.expiry_date <= until
        ]

    # =========================================================================
    # User Operations
    # =========================================================================

    def get_user(self, user_id: str) -> Optional[User]:
        self._ensure_users_loaded()
        return self._users.get(user_id)

    def get_users(self) -> list[User]:
        self._ensure_users_loaded()
        return list(self._users.values())

    def recipients_for(self, notification_type: NotificationType) -> list[str]:
        """
        Users who opted into a notification type.

        This is the preference lookup the dispatcher's producers rely on.
        """
        return [u.id for u in self.get_users() if u.wants(notification_type)]

    # =========================================================================
    # Order Operations
    # =========================================================================

    def get_order(self, order_id: str) -> Optional[Order]:
        self._ensure_orders_loaded()
        return self._orders.get(order_id)

    def get_orders(self) -> list[Order]:
        self._ensure_orders_loaded()
        return list(self._orders.values())

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def ping(self) -> None:
        """Storage reachability check used by the health probe."""
        if not self.data_dir.is_dir():
            raise PersistenceError(f"Data directory not reachable: {self.data_dir}")

    def reload(self):
        """Force reload all data from JSON files."""
        self._products = None
        self._users = None
        self._orders = None
        logger.debug(f"Data store caches cleared for {self.data_dir}")
