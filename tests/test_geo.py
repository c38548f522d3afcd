import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point

from tidysdm.geo import (
    aggregate_grid,
    align_crs,
    cell_index,
    km2m,
    make_mask_from_presence,
    mask_raster,
    nearest_distance,
    neighbours_within,
    template_grid,
    valid_cells,
    valid_mask,
)


def test_km2m():
    assert km2m(2.5) == 2500


def test_template_grid(raster):
    grid = template_grid(raster)
    assert grid.dims == ("y", "x")
    assert grid.shape == (20, 20)


def test_template_grid_rejects_arrays():
    with pytest.raises(TypeError):
        template_grid(np.zeros((3, 3)))


def test_cell_index(raster):
    xs = [500, 1500, 500, -10, 25000]
    ys = [19500, 19500, 18500, 500, 500]
    cells = cell_index(raster, xs, ys)
    assert cells.tolist() == [0, 1, 20, -1, -1]


def test_valid_mask_and_cells(raster):
    mask = valid_mask(raster)
    assert mask.shape == (20, 20)
    assert not mask[:2, :2].any()
    assert mask.sum() == 396

    cells = valid_cells(raster)
    assert len(cells) == 396
    assert 0 not in cells["cell"].values
    # cell centres
    assert np.all(cells["x"] % 1000 == 500)


def test_aggregate_grid(raster):
    coarse = aggregate_grid(raster, 2)
    assert coarse.shape == (10, 10)
    assert cell_index(coarse, [2500], [17500]).tolist() == [11]


def test_neighbours_within():
    coords = np.array([[0, 0], [100, 0], [300, 0]], dtype=float)
    neighbours = neighbours_within(coords, 150)
    assert neighbours[0].tolist() == [1]
    assert neighbours[1].tolist() == [0]
    assert neighbours[2].tolist() == []


def test_neighbours_within_geographic():
    # one degree of longitude at the equator is ~111 km
    coords = np.array([[0, 0], [1, 0]], dtype=float)
    assert neighbours_within(coords, 120000, geographic=True)[0].tolist() == [1]
    assert neighbours_within(coords, 100000, geographic=True)[0].tolist() == []


def test_nearest_distance():
    dist = nearest_distance(np.array([[0.0, 0.0], [10.0, 0.0]]), np.array([[3.0, 4.0]]))
    np.testing.assert_allclose(dist, [5.0, np.hypot(7, 4)])


def test_make_mask_from_presence(presences):
    hull = make_mask_from_presence(presences)
    assert len(hull) == 1
    assert hull.geometry.iloc[0].contains(presences.geometry.union_all().centroid)

    buffered = make_mask_from_presence(presences, method="buffer", buffer=500)
    assert buffered.geometry.iloc[0].area > 0
    with pytest.raises(ValueError):
        make_mask_from_presence(presences, method="buffer", buffer=0)


def test_mask_raster(raster, presences):
    mask = make_mask_from_presence(presences)
    masked = mask_raster(raster, mask)
    assert masked["temp"].shape == raster["temp"].shape
    # the west of the grid is far from every presence
    assert np.isnan(masked["temp"].values[:, :5]).all()


def test_align_crs(raster):
    points = gpd.GeoDataFrame(geometry=[Point(-1.5, 53.4)], crs="EPSG:4326")
    aligned = align_crs(points, raster)
    assert aligned.crs.to_epsg() == 27700
    same = gpd.GeoDataFrame(geometry=[Point(500, 500)], crs="EPSG:27700")
    assert align_crs(same, raster) is same


def test_neighbours_within_is_strict():
    coords = np.array([[0.0, 0.0], [1000.0, 0.0]])
    assert neighbours_within(coords, 1000)[0].tolist() == []
    assert neighbours_within(coords, 1000.5)[0].tolist() == [1]
