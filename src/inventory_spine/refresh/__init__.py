"""Multi-part refresh coordination: refresh states, sweeping and the persister."""

from inventory_spine.refresh.persister import Persister
from inventory_spine.refresh.state import RefreshStateStore
from inventory_spine.refresh.sweeper import LAST_SEEN_COLUMN, Sweeper, build_scope

__all__ = ["LAST_SEEN_COLUMN", "Persister", "RefreshStateStore", "Sweeper", "build_scope"]
