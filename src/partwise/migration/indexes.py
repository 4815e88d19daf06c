"""Secondary index replication from a backup table to its partitioned table.

Replication is best effort. A unique index that does not cover every
partition column cannot exist on a partitioned table, so it is recreated
as a plain index instead; any other failure is logged and the index is
skipped. Neither case fails the table's migration.
"""

from sqlalchemy.exc import DBAPIError
from structlog.stdlib import BoundLogger

from partwise.contracts import IndexCloneOutcome, IndexCloneResult, IndexDefinition, MigrationTarget, UniqueIndexIncompatibleError
from partwise.core.database import PartwiseDB
from partwise.core.dialects import rewrite_index_sql
from partwise.core.logging import get_logger
from partwise.core.naming import safe_identifier
from partwise.core.schema import BUCKET_COLUMN

logger = get_logger(__name__)

CLONE_SUFFIX = "_part"


class IndexReplicator:
    """Clones a backup table's secondary indexes onto the partitioned table.

    Each index is created in its own transaction, so one failure never
    undoes another index.
    """

    def __init__(self, db: PartwiseDB) -> None:
        self._db = db
        self._dialect = db.dialect

    def replicate(self, target: MigrationTarget) -> list[IndexCloneResult]:
        """Clone every non-primary index of ``target.backup_table``.

        Returns:
            One result per source index, in catalog order
        """
        with self._db.connection() as conn:
            definitions = self._dialect.index_definitions(conn, target.backup_table)
        return [self.clone(target, definition) for definition in definitions]

    def clone(self, target: MigrationTarget, definition: IndexDefinition) -> IndexCloneResult:
        new_name = safe_identifier(f"{definition.name}{CLONE_SUFFIX}", self._dialect.max_identifier_length)
        log = logger.bind(table=target.table, index=definition.name, clone=new_name)

        try:
            self._create(target, definition, new_name, unique=True)
        except UniqueIndexIncompatibleError as exc:
            log.warning("Unique index does not cover partition columns, recreating as non-unique", detail=exc.detail)
            try:
                self._create(target, definition, new_name, unique=False)
            except (DBAPIError, ValueError) as retry_exc:
                return self._failure(log, new_name, retry_exc)
            return IndexCloneResult(new_name, IndexCloneOutcome.PATCHED_NON_UNIQUE, exc.detail)
        except (DBAPIError, ValueError) as exc:
            return self._failure(log, new_name, exc)

        log.info("Cloned index")
        return IndexCloneResult(new_name, IndexCloneOutcome.CLONED)

    def _create(self, target: MigrationTarget, definition: IndexDefinition, new_name: str, *, unique: bool) -> None:
        with self._db.connection() as conn:
            sql = rewrite_index_sql(
                definition.sql,
                index_name=self._dialect.quote(conn, new_name),
                target_table=self._dialect.qualify(conn, target.table),
                unique=unique,
            )
            self._dialect.create_index(
                conn,
                sql,
                index_name=new_name,
                partition_columns=(target.key_column, BUCKET_COLUMN),
            )

    def _failure(self, log: BoundLogger, new_name: str, exc: Exception) -> IndexCloneResult:
        if isinstance(exc, DBAPIError) and self._dialect.is_duplicate_object(exc):
            log.info("Index already exists")
            return IndexCloneResult(new_name, IndexCloneOutcome.ALREADY_EXISTS)
        detail = str(exc.orig) if isinstance(exc, DBAPIError) else str(exc)
        log.warning("Index creation failed, skipping", error=detail)
        return IndexCloneResult(new_name, IndexCloneOutcome.SKIPPED, detail)
