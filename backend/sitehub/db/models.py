"""Data models for sites, attribute definitions and import results.

This module defines the core data structures passed between the parser,
the import pipeline and the read side. Sites themselves carry no columns;
everything descriptive about a site is an attribute value attached through
an AttributeDefinition.

Example:
    Describing a freshly registered attribute:
        >>> from sitehub.db.models import AttributeDefinition
        >>> height = AttributeDefinition(
        ...     id=17,
        ...     name="height",
        ...     display_text="height",
        ...     description=None,
        ...     value_type="int",
        ...     scope="S",
        ... )
        >>> height.key
        'attr_17'
"""

from __future__ import annotations

import dataclasses
from typing import Any, Literal

GeoJSON = dict[str, Any]

ValueType = Literal["int", "txt", "num", "ts", "tbl", "ref", "refs"]


@dataclasses.dataclass(frozen=True)
class Feature:
    """One decoded shapefile record.

    Attributes:
        geometry: GeoJSON geometry mapping, or None for a null shape.
        properties: Attribute table values keyed by field name.
    """

    geometry: GeoJSON | None
    properties: dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class FeatureCollection:
    """Features read from one archive plus the CRS the file declares.

    Attributes:
        features: Features in file order.
        declared_srid: EPSG code from the layer's .prj, None when absent.
        source_name: Archive filename the features came from.
    """

    features: list[Feature]
    declared_srid: int | None = None
    source_name: str = ""


@dataclasses.dataclass(frozen=True)
class AttributeDefinition:
    """Registered metadata for one EAV attribute.

    Attributes:
        id: ``ref_attributes.attribute_id``.
        name: Canonical name, unique case-insensitively within ``scope``.
        display_text: Label shown to users; also selects the domain table
            for ``tbl``/``ref``/``refs`` attributes.
        description: Free-form description, if any.
        value_type: Physical storage discriminator, fixed at creation.
        scope: Entity-class catalog the attribute belongs to ("S" = site).
        sort_order: Position within a project's selection, when loaded
            through a project.
    """

    id: int
    name: str
    display_text: str | None
    description: str | None
    value_type: ValueType
    scope: str | None = "S"
    sort_order: int | None = None

    @property
    def key(self) -> str:
        """Column key used for this attribute in site listings."""
        return f"attr_{self.id}"


@dataclasses.dataclass
class ImportSummary:
    """Outcome of one committed shapefile import."""

    project_id: int
    project_name: str
    lineage_id: int
    entities_created: int
    entities_skipped: int
    attributes_used: int
    attribute_names: list[str]
    elapsed_seconds: float


@dataclasses.dataclass
class Pagination:
    total: int
    limit: int
    offset: int
    page: int
    total_pages: int


@dataclasses.dataclass
class SitePage:
    """One page of a project's sites with their resolved attribute values.

    Attributes:
        attributes: The project's selected attributes, in display order.
        sites: One mapping per site: ``id``, ``hub_site_id`` and one
            ``attr_<id>`` string per attribute ("" when the site has none).
        pagination: Paging window and totals.
    """

    attributes: list[AttributeDefinition]
    sites: list[dict[str, Any]]
    pagination: Pagination


@dataclasses.dataclass
class Cluster:
    geometry: GeoJSON
    count: int
    sample_site_ids: list[int]


@dataclasses.dataclass
class ClusterResult:
    """Grid-bucketed view of a project's site geometries.

    Attributes:
        clusters: Occupied grid cells, most populated first.
        total_sites: Distinct sites with a geometry in the project.
        bounds: Envelope of all geometries as GeoJSON (EPSG:4326), or None.
        cluster_count: Number of occupied cells.
        grid_size: Cell edge length in projected units.
    """

    clusters: list[Cluster]
    total_sites: int
    bounds: GeoJSON | None
    cluster_count: int
    grid_size: float
