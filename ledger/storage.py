import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from loguru import logger

from .models import Offer

_MISSING = object()


class Collection(dict):
    """A keyed collection that journals a row's prior state inside a transaction.

    The first keyed access to a row within a transaction records a copy of
    it (or its absence), so rows fetched with ``get`` and then mutated in
    place roll back too. Rows reached by iterating ``values()`` are
    read-only inside a transaction.
    """

    def __init__(self, name: str, storage: "InMemoryStorage"):
        super().__init__()
        self.name = name
        self._storage = storage

    def _remember(self, key) -> None:
        journal = self._storage._active_journal()
        if journal is None or (self.name, key) in journal:
            return
        value = dict.get(self, key, _MISSING)
        journal[(self.name, key)] = value if value is _MISSING else copy.deepcopy(value)

    def __getitem__(self, key):
        self._remember(key)
        return super().__getitem__(key)

    def get(self, key, default=None):
        self._remember(key)
        return super().get(key, default)

    def __setitem__(self, key, value) -> None:
        self._remember(key)
        super().__setitem__(key, value)

    def __delitem__(self, key) -> None:
        self._remember(key)
        super().__delitem__(key)

    def pop(self, key, *default):
        self._remember(key)
        return super().pop(key, *default)

    def setdefault(self, key, default=None):
        self._remember(key)
        return super().setdefault(key, default)


class InMemoryStorage:
    """Document collections keyed by id, with all-or-nothing transactions.

    Every write path enters ``transaction()``. The lock serializes
    read-then-write sequences on a balance. The outermost transaction keeps
    an undo journal of the rows it touches and restores them if the block
    raises, so a failure after the first write never leaves a partially
    applied credit behind.
    """

    def __init__(self, seed: bool = False):
        self.users = Collection("users", self)
        self.offers = Collection("offers", self)
        self.offer_completions = Collection("offer_completions", self)
        self.transactions = Collection("transactions", self)
        self.tournament_entries = Collection("tournament_entries", self)
        self.ad_views = Collection("ad_views", self)
        # (type, source, source_id) -> transaction id
        self.transaction_index = Collection("transaction_index", self)
        # (week_key, user_id) -> tournament entry id
        self.tournament_index = Collection("tournament_index", self)

        self._lock = threading.RLock()
        self._journal: Optional[dict] = None
        self._owner: Optional[int] = None
        if seed:
            self._seed_data()

    def _active_journal(self) -> Optional[dict]:
        # Readers on other threads never write into the owner's journal
        if self._journal is not None and self._owner == threading.get_ident():
            return self._journal
        return None

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            outermost = self._journal is None
            if outermost:
                self._journal = {}
                self._owner = threading.get_ident()
            try:
                yield self
            except BaseException:
                if outermost:
                    touched = self._rollback()
                    logger.warning("Storage transaction rolled back", rows=touched)
                raise
            finally:
                if outermost:
                    self._journal = None
                    self._owner = None

    def _rollback(self) -> int:
        journal, self._journal = self._journal, None
        for (name, key), prior in journal.items():
            collection = getattr(self, name)
            if prior is _MISSING:
                dict.pop(collection, key, None)
            else:
                dict.__setitem__(collection, key, prior)
        return len(journal)

    def add_user(self, user_id: str, display_name: str = "Anonymous", points: int = 0,
                 daily_streak: int = 0, **fields) -> dict:
        with self.transaction():
            user = {
                "id": user_id,
                "display_name": display_name,
                "points": points,
                "total_earnings": fields.pop("total_earnings", points),
                "ad_points": 0,
                "ads_watched": 0,
                "last_active_date": None,
                "last_ad_started_at": None,
                "daily_streak": daily_streak,
                "created_at": datetime.now(timezone.utc),
                "updated_at": None,
            }
            user.update(fields)
            self.users[user_id] = user
            return user

    def add_offer(self, offer_id: str, provider: str, title: str, payout: int) -> dict:
        with self.transaction():
            offer = Offer(id=offer_id, provider=provider, title=title, payout=payout).model_dump()
            self.offers[offer_id] = offer
            return offer

    def _seed_data(self):
        self.add_user("demo-user", display_name="Demo User")
        self.add_offer("kiwi-install-001", "Kiwiwall", "Install and reach level 5", 1500)
        self.add_offer("cpx-survey-001", "CPX", "Consumer habits survey", 600)
