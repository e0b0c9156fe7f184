"""
In-memory document store for users, issues, ledger entries, rewards and redemptions.

Every record is a plain dict keyed by its UUID. Reads hand out copies, so
callers can only change stored state through the methods below. Ledger
entries have no update or delete method.

Multi-step mutations run inside ``transaction()``, a re-entrant lock that
serialises writers the way a row lock would in a database.
"""

import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional
from uuid import UUID


class StorageError(Exception):
    pass


class DuplicateKeyError(StorageError):
    pass


class RecordNotFoundError(StorageError):
    pass


CITIZEN_USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
ADMIN_USER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")

MONTHLY_PASS_REWARD_ID = UUID("11111111-1111-1111-1111-111111111111")
DISCOUNT_VOUCHER_REWARD_ID = UUID("22222222-2222-2222-2222-222222222222")
LISEBERG_REWARD_ID = UUID("33333333-3333-3333-3333-333333333333")
MUSEUM_REWARD_ID = UUID("44444444-4444-4444-4444-444444444444")
BOAT_TRIP_REWARD_ID = UUID("55555555-5555-5555-5555-555555555555")
RESTAURANT_REWARD_ID = UUID("66666666-6666-6666-6666-666666666666")


class InMemoryStorage:
    def __init__(self, seed: bool = True):
        self.users: dict[UUID, dict] = {}
        self.issues: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.rewards: dict[UUID, dict] = {}
        self.redemptions: dict[UUID, dict] = {}
        self.redemption_codes: dict[str, UUID] = {}
        self._lock = threading.RLock()
        if seed:
            self._seed_data()

    def _seed_data(self):
        now = datetime.now(timezone.utc)

        self.users[CITIZEN_USER_ID] = {
            "id": CITIZEN_USER_ID, "display_name": "Anna Medborgare",
            "role": "user", "points_balance": 0,
            "preferred_language": "sv", "created_at": now,
        }
        self.users[ADMIN_USER_ID] = {
            "id": ADMIN_USER_ID, "display_name": "Erik Handläggare",
            "role": "admin", "points_balance": 0,
            "preferred_language": "sv", "created_at": now,
        }

        catalog = [
            (MONTHLY_PASS_REWARD_ID, "Västtrafik Monthly Pass",
             "Free monthly pass for bus, tram and boat in Gothenburg", 25, "train", 20),
            (DISCOUNT_VOUCHER_REWARD_ID, "Gothenburg Discount Voucher",
             "500 kr discount voucher for shopping and restaurants in the city center", 30, "shopping-bag", 30),
            (LISEBERG_REWARD_ID, "Liseberg Entry Ticket",
             "Free entry ticket to Liseberg amusement park", 40, "gift", 25),
            (MUSEUM_REWARD_ID, "Gothenburg Museum of Art",
             "Free entry and guided tour for 2 people", 50, "building", 15),
            (BOAT_TRIP_REWARD_ID, "Gothenburg Archipelago Boat Trip",
             "Full day trip to the archipelago with Styrsöbolaget", 60, "leaf", 10),
            (RESTAURANT_REWARD_ID, "Restaurant Voucher",
             "500 kr to spend at selected restaurants in the city center", 60, "coffee", 40),
        ]
        for reward_id, title, description, cost, icon, inventory in catalog:
            self.rewards[reward_id] = {
                "id": reward_id, "title": {"en": title}, "description": {"en": description},
                "cost": cost, "icon_name": icon, "available": True,
                "inventory_count": inventory, "created_at": now,
            }

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            yield self

    # Generic helpers

    @staticmethod
    def _matches(row: dict, filters: dict[str, Any]) -> bool:
        return all(row.get(key) == value for key, value in filters.items())

    def _find(
        self,
        collection: dict[UUID, dict],
        order_by: Optional[str] = None,
        descending: bool = False,
        **filters: Any,
    ) -> list[dict]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in collection.values() if self._matches(r, filters)]
        if order_by:
            # Ties keep insertion order, latest first when descending.
            if descending:
                rows.reverse()
            rows.sort(key=lambda r: r[order_by], reverse=descending)
        return rows

    def _get(self, collection: dict[UUID, dict], record_id: UUID) -> Optional[dict]:
        with self._lock:
            row = collection.get(record_id)
            return copy.deepcopy(row) if row is not None else None

    def _insert(self, collection: dict[UUID, dict], data: dict) -> dict:
        with self._lock:
            if data["id"] in collection:
                raise DuplicateKeyError(f"Record {data['id']} already exists")
            collection[data["id"]] = copy.deepcopy(data)
        return copy.deepcopy(data)

    def _update(self, collection: dict[UUID, dict], record_id: UUID, fields: dict) -> dict:
        with self._lock:
            row = collection.get(record_id)
            if row is None:
                raise RecordNotFoundError(f"Record {record_id} not found")
            row.update(copy.deepcopy(fields))
            return copy.deepcopy(row)

    # Users and balance cache

    def add_user(self, data: dict) -> dict:
        return self._insert(self.users, data)

    def get_user(self, user_id: UUID) -> Optional[dict]:
        return self._get(self.users, user_id)

    def increment_balance(self, user_id: UUID, delta: int) -> int:
        """Atomically add ``delta`` to the cached balance and return the new value."""
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFoundError(f"User {user_id} not found")
            user["points_balance"] += delta
            return user["points_balance"]

    def decrement_balance_if_sufficient(self, user_id: UUID, amount: int) -> Optional[int]:
        """Subtract ``amount`` only when the balance covers it. Returns the new balance or None."""
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFoundError(f"User {user_id} not found")
            if user["points_balance"] < amount:
                return None
            user["points_balance"] -= amount
            return user["points_balance"]

    def set_balance(self, user_id: UUID, value: int) -> int:
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFoundError(f"User {user_id} not found")
            user["points_balance"] = value
            return value

    # Ledger (append-only)

    def append_ledger_entry(self, data: dict) -> dict:
        return self._insert(self.ledger_entries, data)

    def find_ledger_entries(self, order_by: Optional[str] = "created_at", descending: bool = False, **filters) -> list[dict]:
        return self._find(self.ledger_entries, order_by, descending, **filters)

    # Issues

    def add_issue(self, data: dict) -> dict:
        return self._insert(self.issues, data)

    def get_issue(self, issue_id: UUID) -> Optional[dict]:
        return self._get(self.issues, issue_id)

    def update_issue(self, issue_id: UUID, **fields) -> dict:
        return self._update(self.issues, issue_id, fields)

    def find_issues(self, order_by: Optional[str] = "created_at", descending: bool = True, **filters) -> list[dict]:
        return self._find(self.issues, order_by, descending, **filters)

    # Rewards

    def add_reward(self, data: dict) -> dict:
        return self._insert(self.rewards, data)

    def get_reward(self, reward_id: UUID) -> Optional[dict]:
        return self._get(self.rewards, reward_id)

    def find_rewards(self, order_by: Optional[str] = "cost", descending: bool = False, **filters) -> list[dict]:
        return self._find(self.rewards, order_by, descending, **filters)

    def increment_inventory(self, reward_id: UUID, delta: int) -> Optional[int]:
        with self._lock:
            reward = self.rewards.get(reward_id)
            if reward is None:
                raise RecordNotFoundError(f"Reward {reward_id} not found")
            if reward.get("inventory_count") is None:
                return None
            reward["inventory_count"] += delta
            return reward["inventory_count"]

    # Redemptions

    def add_redemption(self, data: dict) -> dict:
        with self._lock:
            if data["redemption_code"] in self.redemption_codes:
                raise DuplicateKeyError(f"Redemption code {data['redemption_code']} already exists")
            stored = self._insert(self.redemptions, data)
            self.redemption_codes[data["redemption_code"]] = data["id"]
        return stored

    def get_redemption(self, redemption_id: UUID) -> Optional[dict]:
        return self._get(self.redemptions, redemption_id)

    def get_redemption_by_code(self, code: str) -> Optional[dict]:
        with self._lock:
            redemption_id = self.redemption_codes.get(code)
            return self._get(self.redemptions, redemption_id) if redemption_id else None

    def update_redemption(self, redemption_id: UUID, **fields) -> dict:
        return self._update(self.redemptions, redemption_id, fields)

    def find_redemptions(self, order_by: Optional[str] = "redeemed_at", descending: bool = True, **filters) -> list[dict]:
        return self._find(self.redemptions, order_by, descending, **filters)
