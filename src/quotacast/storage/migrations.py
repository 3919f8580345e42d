import structlog
from sqlalchemy import Connection, inspect, select, text

from quotacast.errors import StorageFault
from quotacast.storage.schema import SCHEMA_VERSION, Base, StoreMetadataRow

logger = structlog.get_logger()

_SCHEMA_VERSION_KEY = "schema_version"


def read_schema_version(conn: "Connection") -> "int":
    """
    returns the recorded schema version, or 0 for a database that
    predates version bookkeeping.
    """
    if not inspect(conn).has_table(StoreMetadataRow.__tablename__):
        return 0

    value = conn.execute(
        select(StoreMetadataRow.value).where(
            StoreMetadataRow.key == _SCHEMA_VERSION_KEY
        )
    ).scalar_one_or_none()
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


def _write_schema_version(conn: "Connection", version: "int") -> "None":
    table = StoreMetadataRow.__table__
    conn.execute(table.delete().where(table.c.key == _SCHEMA_VERSION_KEY))
    conn.execute(table.insert().values(key=_SCHEMA_VERSION_KEY, value=str(version)))


def _add_missing_columns(conn: "Connection") -> "list[str]":
    """
    adds every mapped column missing from an existing table. Only
    nullable columns can be added in place; historical rows read the
    new column back as NULL.
    """
    inspector = inspect(conn)
    added: "list[str]" = []

    for table in Base.metadata.sorted_tables:
        existing = {c["name"] for c in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in existing:
                continue
            if not column.nullable:
                raise StorageFault(
                    f"cannot add required column {table.name}.{column.name} in place"
                )

            column_type = column.type.compile(dialect=conn.dialect)
            conn.execute(
                text(
                    f'ALTER TABLE "{table.name}" ADD COLUMN "{column.name}" {column_type}'
                )
            )
            added.append(f"{table.name}.{column.name}")

    return added


def upgrade_schema(conn: "Connection") -> "int":
    """
    brings an existing (or empty) database up to SCHEMA_VERSION without
    touching stored rows: missing tables and indexes are created and
    missing columns are added. Returns the version found before the
    upgrade.
    """
    previous = read_schema_version(conn)

    # creates only the tables that do not exist yet
    Base.metadata.create_all(conn, checkfirst=True)
    added = _add_missing_columns(conn)

    for table in Base.metadata.sorted_tables:
        for index in table.indexes:
            index.create(conn, checkfirst=True)

    if previous != SCHEMA_VERSION:
        _write_schema_version(conn, SCHEMA_VERSION)
        logger.info(
            "schema_upgraded",
            from_version=previous,
            to_version=SCHEMA_VERSION,
            added_columns=added,
        )

    return previous
