from access_governance.storage.base import GovernanceStore
from access_governance.storage.memory import InMemoryGovernanceStore

__all__ = ["GovernanceStore", "InMemoryGovernanceStore"]
