"""
Audit Package.

Exports AuditLogger.
"""

from .audit_logger import AuditLogger

__all__ = ["AuditLogger"]
