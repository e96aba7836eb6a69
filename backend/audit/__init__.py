from .command_log import AuditEntry, AuditError, CommandAuditLog, canonical_payload_hash
from .database import SQLiteAuditDB

__all__ = [
    "AuditEntry",
    "AuditError",
    "CommandAuditLog",
    "SQLiteAuditDB",
    "canonical_payload_hash",
]
