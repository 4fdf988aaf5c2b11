import dataclasses
import json
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from errors import InvalidConfig, InvalidGrid, MissingConfig, MissingLayer
from grid_map import GridMap
from step_filter import (
    STEP_HEIGHT_LAYER,
    PrintObserver,
    StepFilter,
    StepFilterConfig,
    StepFilterObserver,
    load_step_filter_config,
)


LAYER = "traversability_step"


def params(**overrides):
    p = {
        "critical_value": 0.3,
        "first_window_radius": 1.5,
        "second_window_radius": 1.5,
        "critical_cell_number": 5,
        "map_type": LAYER,
    }
    p.update(overrides)
    return p


def impulse_grid(size=5, height=1.0):
    elev = np.zeros((size, size))
    elev[size // 2, size // 2] = height
    return GridMap.from_elevation(elev, 1.0)


def random_grid(seed=0, shape=(12, 10), resolution=1.0, origin=(0.0, 0.0), hole_ratio=0.1):
    rng = np.random.default_rng(seed)
    elev = rng.normal(0.0, 0.3, shape)
    elev[rng.random(shape) < hole_ratio] = np.nan
    return GridMap.from_elevation(elev, resolution, origin)


class RecordingObserver(StepFilterObserver):
    def __init__(self):
        self.events = []
        self.n_cells = None
        self.step_height = None

    def configured(self, config):
        self.events.append("configured")

    def step_computed(self, step_height):
        self.events.append("step_computed")
        self.step_height = step_height.copy()

    def score_computed(self, step_max, n_cells, step):
        self.events.append("score_computed")
        self.n_cells = n_cells.copy()

    def finished(self, grid):
        self.events.append("finished")


def reference_update(grid, cfg):
    """Cell-by-cell evaluation through GridMap.iter_circle."""
    out = grid.copy()
    out.add(cfg.map_type)
    out.add(STEP_HEIGHT_LAYER)

    for idx in out.iter_indices():
        if not out.is_valid(idx, "elevation"):
            continue
        height = out.at("elevation", idx)
        step_max = 0.0
        for nb in out.iter_circle(out.index_to_position(idx), cfg.first_window_radius):
            if not out.is_valid(nb, "elevation"):
                continue
            step = abs(height - out.at("elevation", nb))
            if step > step_max:
                step_max = step
        if step_max > 0.0:
            out.set(STEP_HEIGHT_LAYER, idx, step_max)

    for idx in out.iter_indices():
        n_cells = 0
        step_max = 0.0
        is_valid = False
        for nb in out.iter_circle(out.index_to_position(idx), cfg.second_window_radius):
            if not out.is_valid(nb, STEP_HEIGHT_LAYER):
                continue
            is_valid = True
            value = out.at(STEP_HEIGHT_LAYER, nb)
            if value > step_max:
                step_max = value
                if step_max > cfg.critical_value:
                    n_cells += 1
        if is_valid:
            if cfg.truncate_cell_ratio:
                ratio = float(n_cells // cfg.critical_cell_number)
            else:
                ratio = n_cells / cfg.critical_cell_number
            step = min(step_max, ratio * step_max)
            if step < cfg.critical_value:
                out.set(cfg.map_type, idx, 1.0 - step / cfg.critical_value)
            else:
                out.set(cfg.map_type, idx, 0.0)

    out.erase(STEP_HEIGHT_LAYER)
    return out


# ---------------------------------------------------------------------- #
# Configuration
# ---------------------------------------------------------------------- #
@pytest.mark.parametrize(
    "key",
    ["critical_value", "first_window_radius", "second_window_radius", "critical_cell_number", "map_type"],
)
def test_missing_parameter_is_reported_by_name(key):
    p = params()
    del p[key]
    with pytest.raises(MissingConfig) as exc:
        StepFilterConfig.from_dict(p)
    assert exc.value.parameter == key
    assert key in str(exc.value)


@pytest.mark.parametrize(
    "key, value",
    [
        ("critical_value", 0.0),
        ("critical_value", -0.1),
        ("critical_value", float("nan")),
        ("first_window_radius", -0.01),
        ("second_window_radius", -1.0),
        ("second_window_radius", "wide"),
        ("critical_cell_number", 0),
        ("critical_cell_number", -3),
        ("critical_cell_number", 2.5),
        ("critical_cell_number", True),
        ("truncate_cell_ratio", "yes"),
    ],
)
def test_invalid_parameter_is_reported_with_value(key, value):
    with pytest.raises(InvalidConfig) as exc:
        StepFilterConfig.from_dict(params(**{key: value}))
    assert exc.value.parameter == key
    assert key in str(exc.value)


def test_critical_cell_number_zero_fails_at_construction():
    with pytest.raises(InvalidConfig) as exc:
        StepFilter(params(critical_cell_number=0))
    assert exc.value.parameter == "critical_cell_number"
    assert exc.value.value == 0


def test_empty_map_type_is_missing():
    with pytest.raises(MissingConfig) as exc:
        StepFilterConfig.from_dict(params(map_type=""))
    assert exc.value.parameter == "map_type"


@pytest.mark.parametrize("name", ["elevation", STEP_HEIGHT_LAYER])
def test_reserved_map_type_is_rejected(name):
    with pytest.raises(InvalidConfig):
        StepFilterConfig.from_dict(params(map_type=name))


def test_zero_radii_and_integral_float_count_are_accepted():
    cfg = StepFilterConfig.from_dict(
        params(first_window_radius=0, second_window_radius=0.0, critical_cell_number=5.0)
    )
    assert cfg.first_window_radius == 0.0
    assert cfg.critical_cell_number == 5
    assert isinstance(cfg.critical_cell_number, int)
    assert cfg.truncate_cell_ratio is False


def test_config_is_immutable():
    cfg = StepFilterConfig.from_dict(params())
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.critical_value = 1.0


def test_direct_construction_is_validated():
    with pytest.raises(InvalidConfig):
        StepFilterConfig(critical_value=0.3, first_window_radius=-1.0,
                         second_window_radius=0.1, critical_cell_number=5)


def test_load_config_from_json(tmp_path):
    nested = tmp_path / "nested.json"
    nested.write_text(json.dumps({"step_filter": params(critical_value=0.25)}))
    assert load_step_filter_config(nested).critical_value == 0.25

    flat = tmp_path / "flat.json"
    flat.write_text(json.dumps(params(truncate_cell_ratio=True)))
    assert load_step_filter_config(flat).truncate_cell_ratio is True

    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"step_filter": {"critical_value": 0.3}}))
    with pytest.raises(MissingConfig):
        load_step_filter_config(broken)


# ---------------------------------------------------------------------- #
# Estimation
# ---------------------------------------------------------------------- #
def test_constant_elevation_leaves_output_unknown():
    grid = GridMap.from_elevation(np.full((6, 7), 2.5), 0.5)
    step_filter = StepFilter(params())

    assert np.all(np.isnan(step_filter.step_height(grid)))
    result = step_filter.update(grid)
    assert np.all(np.isnan(result.get(LAYER)))
    assert not result.exists(STEP_HEIGHT_LAYER)


def test_single_cell_grid_is_unknown():
    grid = GridMap.from_elevation(np.array([[5.0]]), 1.0)
    step_filter = StepFilter(params(critical_cell_number=1))

    assert np.isnan(step_filter.step_height(grid)[0, 0])
    result = step_filter.update(grid)
    assert np.isnan(result.at(LAYER, (0, 0)))


def test_impulse_step_height_covers_first_window():
    grid = impulse_grid()
    step = StepFilter(params()).step_height(grid)

    expected = np.full((5, 5), np.nan)
    expected[1:4, 1:4] = 1.0
    np.testing.assert_array_equal(step, expected)


def test_impulse_scores_with_real_valued_ratio():
    result = StepFilter(params()).update(impulse_grid())

    # One record-high above the critical value per cell: step = 1/5 * 1.0
    expected = 1.0 - (1 / 5 * 1.0) / 0.3
    scores = result.get(LAYER)
    assert np.all(np.isfinite(scores))
    assert scores == pytest.approx(np.full((5, 5), expected))


def test_impulse_scores_with_truncated_ratio():
    result = StepFilter(params(truncate_cell_ratio=True)).update(impulse_grid())
    np.testing.assert_array_equal(result.get(LAYER), np.ones((5, 5)))


def test_impulse_blocks_cells_when_one_critical_cell_is_enough():
    result = StepFilter(params(critical_cell_number=1)).update(impulse_grid())
    np.testing.assert_array_equal(result.get(LAYER), np.zeros((5, 5)))


def test_far_cells_stay_unknown():
    result = StepFilter(params(critical_cell_number=1)).update(impulse_grid(size=9))
    scores = result.get(LAYER)

    near = np.zeros((9, 9), dtype=bool)
    near[2:7, 2:7] = True
    assert np.all(scores[near] == 0.0)
    assert np.all(np.isnan(scores[~near]))


def test_counter_only_counts_raised_maxima():
    cfg = params(critical_value=0.45, first_window_radius=1.0,
                 second_window_radius=1.0, critical_cell_number=3)

    forward = RecordingObserver()
    fwd = StepFilter(cfg, observer=forward).update(
        GridMap.from_elevation(np.array([[0.0, 0.5, 1.3, 1.3]]), 1.0)
    )
    backward = RecordingObserver()
    bwd = StepFilter(cfg, observer=backward).update(
        GridMap.from_elevation(np.array([[1.3, 1.3, 0.5, 0.0]]), 1.0)
    )

    np.testing.assert_array_equal(forward.n_cells, [[2, 2, 1, 1]])
    np.testing.assert_array_equal(backward.n_cells, [[1, 1, 1, 1]])

    step_max = 1.3 - 0.5
    partial = 1.0 - (1 / 3 * step_max) / 0.45
    assert fwd.get(LAYER)[0] == pytest.approx([0.0, 0.0, partial, partial])
    # A plain threshold count would see three critical cells around cell 2 here.
    assert bwd.get(LAYER)[0] == pytest.approx([partial] * 4)


def test_invalid_elevation_never_contributes():
    elev = np.zeros((3, 3))
    elev[1, 1] = np.nan
    elev[0, 0] = np.inf
    result = StepFilter(params()).update(GridMap.from_elevation(elev, 1.0))
    assert np.all(np.isnan(result.get(LAYER)))


@pytest.mark.parametrize("truncate", [False, True])
@pytest.mark.parametrize(
    "first, second",
    [(0.0, 0.5), (0.5, 0.5), (0.75, 1.0), (1.15, 0.5), (1.0, 2.0)],
)
def test_matches_cell_by_cell_reference(first, second, truncate):
    grid = random_grid(seed=3, resolution=0.5, origin=(-3.0, 2.0))
    cfg = StepFilterConfig.from_dict(
        params(critical_value=0.25, first_window_radius=first, second_window_radius=second,
               critical_cell_number=2, truncate_cell_ratio=truncate)
    )

    result = StepFilter(cfg).update(grid)
    expected = reference_update(grid, cfg)
    np.testing.assert_allclose(result.get(LAYER), expected.get(LAYER), rtol=1e-12, atol=0.0)


@pytest.mark.parametrize(
    "resolution, first, second, origin",
    [
        (0.04, 0.08, 0.08, (0.0, 0.0)),
        (0.04, 0.12, 0.08, (1.23, 4.56)),
        (0.05, 0.05 * np.sqrt(2.0), 0.1, (0.0, 0.0)),
    ],
)
def test_matches_reference_at_inexact_resolutions(resolution, first, second, origin):
    grid = random_grid(seed=11, shape=(30, 30), resolution=resolution, origin=origin, hole_ratio=0.05)
    cfg = StepFilterConfig.from_dict(
        params(critical_value=0.25, first_window_radius=first, second_window_radius=second,
               critical_cell_number=2)
    )

    result = StepFilter(cfg).update(grid)
    expected = reference_update(grid, cfg)
    np.testing.assert_allclose(result.get(LAYER), expected.get(LAYER), rtol=1e-12, atol=0.0)


def test_scores_stay_in_unit_interval():
    for seed in range(5):
        result = StepFilter(params(critical_value=0.2, critical_cell_number=3)).update(random_grid(seed))
        scores = result.get(LAYER)
        known = scores[np.isfinite(scores)]
        assert known.size > 0
        assert np.all((known >= 0.0) & (known <= 1.0))


def test_update_is_deterministic():
    grid = random_grid(seed=7)
    step_filter = StepFilter(params())
    a = step_filter.update(grid).get(LAYER)
    b = step_filter.update(grid).get(LAYER)
    np.testing.assert_array_equal(a, b)


def test_input_grid_is_not_modified():
    grid = random_grid(seed=1)
    grid.add("color", 0.5)
    before = {name: grid.get(name).copy() for name in grid.layers}

    result = StepFilter(params()).update(grid)

    assert grid.layers == ["elevation", "color"]
    for name, data in before.items():
        np.testing.assert_array_equal(grid.get(name), data)
    assert result.layers == ["elevation", "color", LAYER]
    np.testing.assert_array_equal(result.get("color"), before["color"])
    assert result.get("elevation") is not grid.get("elevation")


def test_missing_elevation_layer():
    grid = GridMap((3, 3), 1.0, layers={"color": np.ones((3, 3))})
    with pytest.raises(MissingLayer) as exc:
        StepFilter(params()).update(grid)
    assert exc.value.layer == "elevation"
    assert grid.layers == ["color"]


def test_invalid_grid_propagates():
    grid = impulse_grid()
    grid.resolution = float("nan")
    with pytest.raises(InvalidGrid):
        StepFilter(params()).update(grid)


def test_step_height_layer_never_returned():
    grid = impulse_grid()
    grid.add(STEP_HEIGHT_LAYER, 7.0)
    result = StepFilter(params()).update(grid)

    assert not result.exists(STEP_HEIGHT_LAYER)
    assert result.layers == ["elevation", LAYER]
    # a stale layer on the input does not feed the second pass
    np.testing.assert_array_equal(result.get(LAYER), StepFilter(params()).update(impulse_grid()).get(LAYER))
    np.testing.assert_array_equal(grid.get(STEP_HEIGHT_LAYER), np.full((5, 5), 7.0))


def test_existing_output_layer_is_replaced():
    grid = GridMap.from_elevation(np.zeros((4, 4)), 1.0)
    grid.add(LAYER, 0.5)
    result = StepFilter(params()).update(grid)
    assert np.all(np.isnan(result.get(LAYER)))
    assert np.all(grid.get(LAYER) == 0.5)


def test_custom_output_layer_name():
    result = StepFilter(params(map_type="step_risk")).update(impulse_grid())
    assert result.exists("step_risk")
    assert not result.exists(LAYER)


def test_estimate_is_update():
    step_filter = StepFilter(params())
    grid = impulse_grid()
    np.testing.assert_array_equal(step_filter.estimate(grid).get(LAYER), step_filter.update(grid).get(LAYER))


def test_observer_hooks_run_in_order():
    observer = RecordingObserver()
    step_filter = StepFilter(params(), observer=observer)
    step_filter.update(impulse_grid())
    assert observer.events == ["configured", "step_computed", "score_computed", "finished"]
    assert np.nanmax(observer.step_height) == 1.0


def test_print_observer_reports(capsys):
    StepFilter(params(critical_cell_number=1), observer=PrintObserver()).update(impulse_grid())
    out = capsys.readouterr().out
    assert "[INFO] Critical step height = 0.300000." in out
    assert "[INFO] Pass 1: 9 cells with a step" in out
    assert "[INFO] Pass 2: 25 cells saw a step above the critical value." in out


def test_concurrent_calls_share_one_filter():
    step_filter = StepFilter(params(critical_value=0.2))
    grids = [random_grid(seed) for seed in range(6)]
    sequential = [step_filter.update(g).get(LAYER) for g in grids]

    with ThreadPoolExecutor(max_workers=3) as pool:
        parallel = list(pool.map(lambda g: step_filter.update(g).get(LAYER), grids))

    for a, b in zip(sequential, parallel):
        np.testing.assert_array_equal(a, b)
