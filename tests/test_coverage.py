"""
Unit tests for the region coverage resolver (Phase 4).
Regions are small in-memory boxes; no boundary files are read.
"""
import sys
from pathlib import Path

import geopandas as gpd
import pytest
from shapely.geometry import Polygon, box

sys.path.insert(0, str(Path(__file__).parent.parent))

from trip_pipeline import (
    Region,
    Route,
    Segment,
    Waypoint,
    load_region_catalog,
    region_catalog_frame,
    resolve_coverage,
)


def make_route(index: int, *path) -> Route:
    origin = Waypoint(f"P{index}", *path[0])
    destination = Waypoint(f"P{index + 1}", *path[-1])
    return Route(Segment(index, origin, destination), tuple(path), 1000.0, 60.0)


@pytest.fixture
def stacked_regions():
    """R1 covers y in [0, 1], R2 covers y in [1, 2], R3 is far away."""
    return region_catalog_frame([
        Region("R1", "Region 1", box(-1, 0, 1, 1)),
        Region("R2", "Region 2", box(-1, 1, 1, 2)),
        Region("R3", "Region 3", box(10, 10, 11, 11)),
    ])


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

class TestCoverageSet:
    def test_region_shared_by_two_legs_counted_once(self, stacked_regions):
        routes = [make_route(0, (0, 0), (0, 1)), make_route(1, (0, 1), (0, 2))]
        coverage = resolve_coverage(stacked_regions, routes)
        assert coverage.visited == {"R1", "R2"}
        # R1 touches both legs at the shared boundary point: two audit rows, one member
        assert sorted(coverage.hits[coverage.hits["region_id"] == "R1"]["Leg"]) == [1, 2]

    def test_region_reentered_counted_once(self, stacked_regions):
        # leaves R1 into R2 and comes back, twice
        zigzag = make_route(0, (-0.5, 0.5), (-0.5, 1.5), (0, 0.5), (0.5, 1.5), (0.5, 0.5))
        coverage = resolve_coverage(stacked_regions, [zigzag])
        assert coverage.visited == {"R1", "R2"}
        assert len(coverage.hits) == 2

    def test_untouched_region_not_visited(self, stacked_regions):
        coverage = resolve_coverage(stacked_regions, [make_route(0, (0, 0.2), (0, 0.8))])
        assert coverage.visited == {"R1"}
        assert coverage.flags == {"R1": True, "R2": False, "R3": False}

    def test_cardinality_bounded_by_catalog(self, stacked_regions):
        routes = [make_route(i, (-1 + i, -1), (11, 11)) for i in range(5)]
        coverage = resolve_coverage(stacked_regions, routes)
        assert len(coverage.visited) <= len(stacked_regions)

    def test_no_routes(self, stacked_regions):
        coverage = resolve_coverage(stacked_regions, [])
        assert coverage.visited == set()
        assert coverage.hits.empty
        assert not any(coverage.flags.values())

    def test_zero_length_route_inside_region(self, stacked_regions):
        coverage = resolve_coverage(stacked_regions, [make_route(0, (0.5, 0.5), (0.5, 0.5))])
        assert coverage.visited == {"R1"}

    def test_flag_regions_for_presentation(self, stacked_regions):
        coverage = resolve_coverage(stacked_regions, [make_route(0, (0, 1.5), (0, 1.8))])
        flagged = coverage.flag_regions(stacked_regions)
        assert list(flagged["visited"]) == [False, True, False]
        assert "visited" not in stacked_regions.columns


# ---------------------------------------------------------------------------
# Coordinate systems
# ---------------------------------------------------------------------------

class TestReprojection:
    def test_routes_reprojected_to_catalog_crs(self, stacked_regions):
        mercator = stacked_regions.to_crs("EPSG:3857")
        routes = [make_route(0, (0, 0.5), (0, 1.5))]
        coverage = resolve_coverage(mercator, routes)
        assert coverage.visited == {"R1", "R2"}

    def test_catalog_without_crs_fails_every_region(self, stacked_regions):
        no_crs = gpd.GeoDataFrame(stacked_regions.drop(columns="geometry"),
                                  geometry=list(stacked_regions.geometry), crs=None)
        coverage = resolve_coverage(no_crs, [make_route(0, (0, 0), (0, 2))])
        assert coverage.visited == set()
        assert [f.region_id for f in coverage.failures] == ["R1", "R2", "R3"]


# ---------------------------------------------------------------------------
# Bad boundaries
# ---------------------------------------------------------------------------

class TestGeometryFailures:
    def test_invalid_boundary_is_reported_and_skipped(self):
        bowtie = Polygon([(0, 0), (1, 1), (1, 0), (0, 1), (0, 0)])
        regions = region_catalog_frame([
            Region("BAD", "Bow tie", bowtie),
            Region("OK", "Fine", box(-1, -1, 2, 2)),
        ])
        coverage = resolve_coverage(regions, [make_route(0, (0.5, -0.5), (0.5, 1.5))])
        assert coverage.visited == {"OK"}
        assert len(coverage.failures) == 1
        assert coverage.failures[0].region_id == "BAD"
        assert "invalid boundary" in coverage.failures[0].reason

    def test_empty_boundary_is_reported(self):
        regions = region_catalog_frame([Region("EMPTY", "Nothing", Polygon())])
        coverage = resolve_coverage(regions, [make_route(0, (0, 0), (1, 1))])
        assert coverage.visited == set()
        assert coverage.failures[0].region_id == "EMPTY"


# ---------------------------------------------------------------------------
# Catalog loading
# ---------------------------------------------------------------------------

class TestLoadRegionCatalog:
    def test_reads_and_reprojects(self, tmp_path):
        source = gpd.GeoDataFrame(
            {"STUSPS": ["CO", "UT"], "NAME": ["Colorado", "Utah"]},
            geometry=[box(-109, 37, -102, 41), box(-114, 37, -109, 42)],
            crs="EPSG:4326",
        )
        path = tmp_path / "states.geojson"
        source.to_file(path, driver="GeoJSON")

        regions = load_region_catalog(path)
        assert list(regions.columns) == ["region_id", "name", "geometry"]
        assert list(regions["region_id"]) == ["CO", "UT"]
        assert regions.crs.to_epsg() == 5070

        denver_to_slc = make_route(0, (-104.99, 39.74), (-111.89, 40.76))
        assert resolve_coverage(regions, [denver_to_slc]).visited == {"CO", "UT"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_region_catalog(tmp_path / "missing.shp")
