"""Shared types for cloudferry.

This module defines enums used by both the cipher layer and the transfer
workers.
"""

from __future__ import annotations

from enum import Enum


class TransferDirection(str, Enum):
    """Direction of a file transfer.

    The direction decides which way the cipher layer works:
    uploads are encrypted on the way out, downloads decrypted on the way in.
    """

    UPLOAD = "upload"
    DOWNLOAD = "download"
