from typing import Any, List, Optional

class CatalogSyncException(Exception):
    """Base exception for the catalog sync service"""
    pass

class ValidationError(CatalogSyncException):
    """Job input or tenant state is invalid; retrying will not help"""
    pass

class TransientNetworkError(CatalogSyncException):
    """5xx, timeout, connection drop or rate limit budget exhausted"""
    pass

class AuthError(CatalogSyncException):
    """Authentication refused or a 401 survived one token refresh"""
    pass

class APIError(CatalogSyncException):
    """Non-retryable error response from an external system"""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

class SourceAPIError(APIError):
    """Exception raised for source ERP API errors"""
    pass

class SinkAPIError(APIError):
    """Exception raised for storefront API errors"""
    pass

class CircularReferenceError(CatalogSyncException):
    """A category chain refers back to itself"""

    def __init__(self, chain: List[str]):
        super().__init__(f"Circular category reference: {' -> '.join(chain)}")
        self.chain = chain

class SyncError(CatalogSyncException):
    """Exception raised during synchronization process"""
    pass
