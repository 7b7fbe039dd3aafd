"""Error taxonomy shared by the storage, migration, backup and protection layers."""


class CoachVaultError(Exception):
    code = "internal_error"


class StorageUnavailable(CoachVaultError):
    code = "storage_unavailable"


class QuotaExceeded(CoachVaultError):
    code = "quota_exceeded"


class CorruptedDataError(CoachVaultError):
    code = "corrupted_data"


class MigrationPartialFailure(CoachVaultError):
    code = "migration_partial_failure"

    def __init__(self, result):
        self.result = result
        failed = len(result.errors)
        super().__init__(f"Migration failed for {failed} conversation(s)")


class NotFoundError(CoachVaultError):
    code = "not_found"


class DangerousOperationBlocked(CoachVaultError):
    code = "dangerous_operation_blocked"


class InsufficientPermission(CoachVaultError):
    code = "insufficient_permission"


class OrphanedRecord:
    """Audit finding: a child row whose parent no longer exists.

    Not an exception; orphan scans return these as values.
    """

    __slots__ = ("table", "row_id", "fk_value", "created_at")

    def __init__(self, table: str, row_id, fk_value, created_at):
        self.table = table
        self.row_id = row_id
        self.fk_value = fk_value
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "row_id": self.row_id,
            "fk_value": self.fk_value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"OrphanedRecord({self.table!r}, row_id={self.row_id!r}, fk_value={self.fk_value!r})"
