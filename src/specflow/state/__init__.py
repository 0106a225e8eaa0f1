from specflow.state.journal import Journal, JournalEntry, JournalTag
from specflow.state.store import RunStore, StateStoreError

__all__ = ["Journal", "JournalEntry", "JournalTag", "RunStore", "StateStoreError"]
