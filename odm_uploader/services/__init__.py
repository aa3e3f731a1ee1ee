"""Services for odm_uploader."""
from .api_client import ImageHandlerClient
from .credentials import WebODMTokenProvider

__all__ = [
    "ImageHandlerClient",
    "WebODMTokenProvider",
]
