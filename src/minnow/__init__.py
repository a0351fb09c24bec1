"""Minnow — period-based deposit pond with Merkle-gated token claims."""

from minnow.config import MinnowConfig
from minnow.service import MinnowService, ServiceResult

__all__ = ["MinnowConfig", "MinnowService", "ServiceResult"]
