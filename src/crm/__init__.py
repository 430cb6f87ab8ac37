"""CRM domain - backend interface, in-memory backend and the agent tool catalogue."""

from crm.backend import CrmBackend, CrmError, NotFoundError
from crm.memory import InMemoryCrmBackend, seed_demo_data

__all__ = [
    "CrmBackend",
    "CrmError",
    "NotFoundError",
    "InMemoryCrmBackend",
    "seed_demo_data",
]
