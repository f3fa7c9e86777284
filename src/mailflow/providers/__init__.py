"""Mail provider abstraction.

Engines talk to EmailProvider; GraphProviderFactory builds a Microsoft
Graph backed provider per account with shared per-account rate limiting.

Usage:
    from mailflow.providers import GraphProviderFactory

    providers = GraphProviderFactory(config.provider)
    provider = providers.create(account)
    page = await provider.fetch_messages(MessageFilter(start_date=start), None, 25)
"""

from mailflow.providers.base import (
    EmailMessage,
    EmailProvider,
    MessageFilter,
    MessagePage,
    ProviderFactory,
)
from mailflow.providers.graph import GraphClient, GraphMailProvider, GraphProviderFactory

__all__ = [
    "EmailMessage",
    "EmailProvider",
    "MessageFilter",
    "MessagePage",
    "ProviderFactory",
    "GraphClient",
    "GraphMailProvider",
    "GraphProviderFactory",
]
