"""Vendor task adapters, one per generation tool."""

from genflow.services.vendors.base import (
    NormalizedStatus,
    TaskContext,
    TaskState,
    VendorAdapter,
)
from genflow.services.vendors.registry import build_adapters

__all__ = ["NormalizedStatus", "TaskContext", "TaskState", "VendorAdapter", "build_adapters"]
