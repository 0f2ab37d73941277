"""Batched read-back of EAV attribute values for many sites at once.

Each attribute is fetched with exactly one query covering every requested
site, so reading 10 000 sites costs as many queries as reading one. The
rows are regrouped into one string per (site, attribute), multiple values
joined with ``" | "`` in storage order.

Where a value lives depends on the attribute's type:

    int/txt/num/ts  sat_site_attributes, the matching typed column
    tbl             a per-domain table picked by the attribute's display
                    text (bbl, built)
    ref/refs        sat_site_<domain> joined to ref_<domain>
                    (material, style, type, use)

Domain tables are whitelisted; an attribute naming any other domain simply
has no values.

Example:
    Resolve two attributes for a page of sites:
        >>> values = eav_reader.resolve_attribute_values(
        ...     conn, [height, material], [101, 102]
        ... )
        >>> values[101]
        {'attr_17': '42', 'attr_3': 'Brick | Stone'}
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from sitehub.db import database
from sitehub.services import value_types

if TYPE_CHECKING:
    from collections.abc import Sequence

    import psycopg2.extensions

    from sitehub.db import models as db_models

VALUE_SEPARATOR = " | "

GENERIC_COLUMNS = {
    "int": "attribute_value_int",
    "txt": "attribute_value_text",
    "num": "attribute_value_number",
    "ts": "attribute_value_ts",
}

TABLE_DOMAINS = {
    "bbl": ("sat_site_bbl", "bbl"),
    "built": ("sat_site_built", "date_combo"),
}

REFERENCE_DOMAINS = frozenset(database.VOCABULARIES)


def _domain(attribute: db_models.AttributeDefinition) -> str:
    return (attribute.display_text or attribute.name).strip().lower()


def _build_query(
    attribute: db_models.AttributeDefinition,
    restricted: bool,
) -> tuple[str, list[Any]] | None:
    """SQL and leading parameters for ``attribute``; None if unresolvable."""

    def site_filter(column: str) -> str:
        return f"{column} = ANY(%s)" if restricted else "TRUE"

    if attribute.value_type in GENERIC_COLUMNS:
        column = GENERIC_COLUMNS[attribute.value_type]
        return (
            f"SELECT hub_site_id, {column} FROM sat_site_attributes "
            f"WHERE attribute_id = %s AND {site_filter('hub_site_id')} "
            "ORDER BY hub_site_id, start_dt",
            [attribute.id],
        )

    domain = _domain(attribute)
    if attribute.value_type == "tbl" and domain in TABLE_DOMAINS:
        table, column = TABLE_DOMAINS[domain]
        return (
            f"SELECT hub_site_id, {column} FROM {table} "
            f"WHERE {site_filter('hub_site_id')} ORDER BY hub_site_id, start_dt",
            [],
        )

    if attribute.value_type in ("ref", "refs") and domain in REFERENCE_DOMAINS:
        return (
            f"SELECT s.hub_site_id, r.{domain}_nm "
            f"FROM sat_site_{domain} s "
            f"JOIN ref_{domain} r ON r.{domain}_id = s.{domain}_id "
            f"WHERE {site_filter('s.hub_site_id')} "
            "ORDER BY s.hub_site_id, s.sort_order",
            [],
        )

    return None


def fetch_attribute_values(
    cur: psycopg2.extensions.cursor,
    attribute: db_models.AttributeDefinition,
    site_ids: Sequence[int],
) -> dict[int, list[str]]:
    """Read every value of one attribute for ``site_ids``.

    Args:
        cur: Open cursor.
        attribute: Definition whose values to read.
        site_ids: Sites to restrict to; empty means all sites.

    Returns:
        Site id to rendered values, in storage order. Sites without a value
        are absent.
    """
    query = _build_query(attribute, restricted=bool(site_ids))
    if query is None:
        logger.debug(
            "No value source for attribute {} ({})",
            attribute.name,
            attribute.value_type,
        )
        return {}

    sql, params = query
    if site_ids:
        params.append(list(site_ids))
    cur.execute(sql, params)

    values: dict[int, list[str]] = {}
    for site_id, raw in cur.fetchall():
        text = value_types.format_value(attribute.value_type, raw)
        if text is not None:
            values.setdefault(int(site_id), []).append(text)
    return values


def resolve_attribute_values(
    conn: psycopg2.extensions.connection,
    attributes: Sequence[db_models.AttributeDefinition],
    site_ids: Sequence[int],
) -> dict[int, dict[str, str]]:
    """Resolve many attributes for many sites, one query per attribute.

    An attribute whose read fails for any reason is logged and left out; the others are
    unaffected. Inside a transaction each query runs in a savepoint so a
    failure doesn't abort the transaction for the rest.

    Returns:
        ``{site_id: {"attr_<id>": "v1 | v2", ...}}`` for sites with at
        least one value.
    """
    resolved: dict[int, dict[str, str]] = {}
    with conn.cursor() as cur:
        for attribute in attributes:
            try:
                if conn.autocommit:
                    values = fetch_attribute_values(cur, attribute, site_ids)
                else:
                    with database.in_savepoint(cur, "resolve_attribute"):
                        values = fetch_attribute_values(cur, attribute, site_ids)
            except Exception as exc:
                logger.warning(
                    "Could not read attribute {} (id {}): {}",
                    attribute.name,
                    attribute.id,
                    exc,
                )
                continue

            for site_id, site_values in values.items():
                resolved.setdefault(site_id, {})[attribute.key] = (
                    VALUE_SEPARATOR.join(site_values)
                )
    return resolved
