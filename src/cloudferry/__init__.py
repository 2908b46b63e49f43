"""CloudFerry - Queued, encrypted file transfers against a storage service."""

__version__ = "0.1.0"
