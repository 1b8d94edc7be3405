"""External project-tracker integrations: contract, refresher and token cache."""

from .base import IntegrationCollaborator, StateCallback
from .cache import TokenCache
from .refresher import IntegrationRefresher

__all__ = ["IntegrationCollaborator", "IntegrationRefresher", "StateCallback", "TokenCache"]
