"""Lookup-or-create of EAV attribute definitions.

Attribute definitions are shared by every import: a field called ``Height``
in one shapefile and ``height`` in another resolve to the same
``ref_attributes`` row, and the value type fixed when that row was first
created wins over whatever the new upload looks like.

Concurrent imports can race to create the same definition. The insert runs
inside a savepoint, so the losing import rolls back just that statement,
re-selects and adopts the winner's row.

Example:
    Resolve fields during an import transaction:
        >>> cache = attribute_registry.AttributeCache()
        >>> with conn.cursor() as cur:
        ...     registrar = attribute_registry.AttributeRegistrar(cur, "S", cache)
        ...     height = registrar.resolve("height", "int")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import psycopg2.errors
from loguru import logger

from sitehub.db import database
from sitehub.db import models as db_models

if TYPE_CHECKING:
    import psycopg2.extensions

_ATTRIBUTE_COLUMNS = (
    "attribute_id, attribute_nm, attribute_text, attribute_desc, "
    "attribute_type, attribute_p_or_s"
)

_SELECT_BY_NAME = (
    f"SELECT {_ATTRIBUTE_COLUMNS} FROM ref_attributes "
    "WHERE LOWER(attribute_nm) = LOWER(%s) AND attribute_p_or_s = %s "
    "LIMIT 1"
)

_INSERT_ATTRIBUTE = (
    "INSERT INTO ref_attributes "
    "(attribute_nm, attribute_text, attribute_desc, attribute_type, "
    "attribute_p_or_s) "
    "VALUES (%s, %s, %s, %s, %s) "
    f"RETURNING {_ATTRIBUTE_COLUMNS}"
)


class AttributeCache:
    """Per-import memo of resolved definitions keyed by lowercase name."""

    def __init__(self) -> None:
        self._by_name: dict[str, db_models.AttributeDefinition] = {}

    def get(self, name: str) -> db_models.AttributeDefinition | None:
        return self._by_name.get(name.lower())

    def put(self, name: str, attribute: db_models.AttributeDefinition) -> None:
        self._by_name[name.lower()] = attribute


class AttributeRegistrar:
    """Resolves field names to attribute definitions on one cursor.

    Args:
        cur: Cursor inside the caller's transaction.
        scope: ``attribute_p_or_s`` value of the catalog to resolve in.
        cache: Memo owned by the caller; shared across ``resolve`` calls.
    """

    def __init__(
        self,
        cur: psycopg2.extensions.cursor,
        scope: str,
        cache: AttributeCache,
    ) -> None:
        self._cur = cur
        self._scope = scope
        self._cache = cache
        self.created = 0

    def _select(self, name: str) -> db_models.AttributeDefinition | None:
        self._cur.execute(_SELECT_BY_NAME, (name, self._scope))
        row = self._cur.fetchone()
        return database.attribute_from_row(row) if row else None

    def resolve(
        self,
        name: str,
        inferred_type: db_models.ValueType,
    ) -> db_models.AttributeDefinition:
        """Return the definition for ``name``, creating it when absent.

        Args:
            name: Field name as it appears in the upload.
            inferred_type: Type used only if the definition is created now.

        Returns:
            The existing or newly created AttributeDefinition.
        """
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        attribute = self._select(name)
        if attribute is None:
            attribute = self._create(name, inferred_type)
        elif attribute.value_type != inferred_type:
            logger.debug(
                "Attribute {} keeps type {} (upload looks like {})",
                attribute.name,
                attribute.value_type,
                inferred_type,
            )

        self._cache.put(name, attribute)
        return attribute

    def _create(
        self,
        name: str,
        value_type: db_models.ValueType,
    ) -> db_models.AttributeDefinition:
        try:
            with database.in_savepoint(self._cur, "create_attribute"):
                self._cur.execute(
                    _INSERT_ATTRIBUTE,
                    (name, name, None, value_type, self._scope),
                )
                row = self._cur.fetchone()
        except psycopg2.errors.UniqueViolation:
            attribute = self._select(name)
            if attribute is None:
                raise
            logger.info(
                "Attribute {} was created concurrently; using id {}",
                name,
                attribute.id,
            )
            return attribute

        self.created += 1
        attribute = database.attribute_from_row(row)
        logger.info(
            "Created attribute {} (id {}, type {})",
            attribute.name,
            attribute.id,
            attribute.value_type,
        )
        return attribute


def list_site_attributes(
    conn: psycopg2.extensions.connection,
    scope: str,
) -> list[db_models.AttributeDefinition]:
    """Every attribute definition in ``scope``, ordered by name."""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {_ATTRIBUTE_COLUMNS} FROM ref_attributes "
            "WHERE attribute_p_or_s = %s ORDER BY attribute_nm",
            (scope,),
        )
        rows = cur.fetchall()
    return [database.attribute_from_row(row) for row in rows]
