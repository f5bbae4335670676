from .orchestrator import PaginationOrchestrator
from .provider import ProviderAdapter, to_search_page

__all__ = ["PaginationOrchestrator", "ProviderAdapter", "to_search_page"]
