"""
test_spatial.py - Tests for L-function estimation, Kontextual and spatial domains

How to run:
    pytest tests/test_spatial.py -v
    pytest tests/test_spatial.py -v -k "Kontextual"

Most checks use synthetic point patterns whose answer is known in closed
form (disjoint halves, hand-counted pairs) or statistically (complete
spatial randomness, planted attraction).
"""

import numpy as np
import pytest

from kontextloji.data.config import (
    ConfigurationError,
    DegenerateWindowError,
    InsufficientCellsError,
    InvalidHierarchyError,
    SpatialStatConfig,
    Window,
)
from kontextloji.spatial.point.intensity import kernel_intensity, normalise_intensity
from kontextloji.spatial.point.kontextual import (
    KontextualResult,
    kontextual,
    kontextual_from_image,
    parent_window,
)
from kontextloji.spatial.point.ripley import (
    RipleyResult,
    cross_k_from_coords,
    cross_l,
    cross_l_from_coords,
    edge_weights,
    isotropic_weights,
    l_summary,
    pair_distances,
    ripleys_l,
    simulation_envelope,
    translation_weights,
)
from kontextloji.spatial.point.domains import local_l_profiles, spatial_domains

from conftest import RADII, WINDOW, build_table, uniform_points


def u_value(coords_i, coords_j, window=WINDOW, radii=RADII, **kwargs):
    """Summary statistic sum_r (L(r) - r) for two point sets."""
    l_values = cross_l_from_coords(coords_i, coords_j, window, radii, **kwargs)
    return l_summary(l_values, radii)


def exponential_gradient(rng, n, rate=3.0):
    """Points whose density grows as exp(rate * x / 100) across a 100 x 100 window."""
    u = rng.uniform(0.0, 1.0, n)
    x = 100.0 / rate * np.log1p(u * np.expm1(rate))
    return np.column_stack([x, rng.uniform(0.0, 100.0, n)])


# ===========================================================================
# SECTION 1 — Edge correction weights
# ===========================================================================


class TestEdgeWeights:

    def test_isotropic_interior_is_one(self):
        w = isotropic_weights([[50, 50]], np.array([10.0]), WINDOW)
        assert w[0] == pytest.approx(1.0)

    def test_isotropic_edge_midpoint_is_two(self):
        """Half of the circle lies outside the window."""
        w = isotropic_weights([[0, 50]], np.array([10.0]), WINDOW)
        assert w[0] == pytest.approx(2.0)

    def test_isotropic_corner_is_four(self):
        """Only a quarter of the circle lies inside; corner overlap counted once."""
        w = isotropic_weights([[0, 0]], np.array([10.0]), WINDOW)
        assert w[0] == pytest.approx(4.0)

    def test_isotropic_weights_at_least_one(self, rng):
        pts = uniform_points(rng, 200)
        d = rng.uniform(0.1, 30.0, 200)
        assert np.all(isotropic_weights(pts, d, WINDOW) >= 1.0 - 1e-12)

    def test_translation_weight(self):
        w = translation_weights(np.array([[10.0, 0.0]]), WINDOW)
        assert w[0] == pytest.approx(10000 / 9000)

    def test_none_is_unweighted(self):
        w = edge_weights(np.zeros((3, 2)), np.ones((3, 2)), np.ones(3), WINDOW, "none")
        np.testing.assert_array_equal(w, 1.0)

    def test_unknown_correction_raises(self):
        with pytest.raises(ConfigurationError):
            edge_weights(np.zeros((1, 2)), np.ones((1, 2)), np.ones(1), WINDOW, "border")


# ===========================================================================
# SECTION 2 — Pair search
# ===========================================================================


class TestPairDistances:

    def test_pairs_within_radius(self):
        a = np.array([[0.0, 0.0]])
        b = np.array([[3.0, 4.0], [30.0, 0.0]])
        i_idx, j_idx, d = pair_distances(a, b, 10.0)
        assert j_idx.tolist() == [0]
        assert d[0] == pytest.approx(5.0)

    def test_same_cell_excluded_by_id(self):
        pts = np.array([[0.0, 0.0], [1.0, 0.0]])
        ids = np.array(["a", "b"])
        i_idx, j_idx, d = pair_distances(pts, pts, 5.0, ids, ids)
        assert len(d) == 2
        assert np.all(i_idx != j_idx)

    def test_colocated_distinct_cells_kept(self):
        """Two different cells at identical coordinates form a pair at d = 0."""
        pts = np.array([[5.0, 5.0]])
        _, _, d = pair_distances(pts, pts, 1.0, np.array(["a"]), np.array(["b"]))
        assert d.tolist() == [0.0]

    def test_empty_input(self):
        i_idx, j_idx, d = pair_distances(np.empty((0, 2)), np.ones((3, 2)), 5.0)
        assert len(i_idx) == len(j_idx) == len(d) == 0


# ===========================================================================
# SECTION 3 — Cross-K / cross-L estimator
#
# We check:
#   (a) exact values on hand-countable configurations
#   (b) complete spatial randomness gives u close to 0
#   (c) planted attraction and segregation have the expected sign
#   (d) the inhomogeneity correction removes density-gradient artefacts
#   (e) failures raise unit-level errors
# ===========================================================================


class TestCrossK:

    # -----------------------------------------------------------------------
    # (a) Exact values
    # -----------------------------------------------------------------------

    def test_single_pair_counts_at_its_distance(self):
        """One pair at distance 5: K jumps from 0 to |W| at r = 5."""
        k = cross_k_from_coords([[10, 10]], [[13, 14]], WINDOW, [4, 5, 6], "none")
        np.testing.assert_allclose(k, [0.0, 10000.0, 10000.0])

    def test_shared_cells_reduce_normalisation(self):
        """
        Three cells used as both sets: 3 * 3 - 3 = 6 ordered pairs.
        Only (0,1) and (1,0) are within 5.
        """
        pts = np.array([[10.0, 10.0], [10.0, 13.0], [50.0, 50.0]])
        ids = np.array(["a", "b", "c"])
        k = cross_k_from_coords(pts, pts, WINDOW, [5.0], "none", ids_i=ids, ids_j=ids)
        assert k[0] == pytest.approx(10000 / 6 * 2)

    def test_disjoint_halves_give_minus_sum_of_radii(self, rng):
        """No pair closer than 20: L = 0 at every radius, so u = -sum(r) = -55."""
        left = uniform_points(rng, 100, xmax=40.0)
        right = uniform_points(rng, 100, xmin=60.0)
        assert u_value(left, right) == pytest.approx(-55.0)

    def test_constant_intensity_matches_homogeneous(self, rng):
        a, b = uniform_points(rng, 80), uniform_points(rng, 60)
        k_hom = cross_k_from_coords(a, b, WINDOW, RADII)
        k_inh = cross_k_from_coords(a, b, WINDOW, RADII,
                                    intensity_i=np.full(80, 3.0), intensity_j=np.full(60, 0.5))
        np.testing.assert_allclose(k_inh, k_hom)

    def test_intensity_scale_invariance(self, rng):
        a, b = uniform_points(rng, 80), uniform_points(rng, 60)
        lam_a, lam_b = rng.uniform(0.5, 2.0, 80), rng.uniform(0.5, 2.0, 60)
        k1 = cross_k_from_coords(a, b, WINDOW, RADII, intensity_i=lam_a, intensity_j=lam_b)
        k2 = cross_k_from_coords(a, b, WINDOW, RADII, intensity_i=7 * lam_a, intensity_j=lam_b / 3)
        np.testing.assert_allclose(k1, k2)

    def test_k_is_non_decreasing(self, rng):
        a, b = uniform_points(rng, 100), uniform_points(rng, 100)
        for correction in ("none", "isotropic", "translation"):
            k = cross_k_from_coords(a, b, WINDOW, RADII, correction)
            assert np.all(np.diff(k) >= 0)

    # -----------------------------------------------------------------------
    # (b) Complete spatial randomness
    # -----------------------------------------------------------------------

    def test_csr_close_to_zero(self):
        """Independent uniform patterns: u at r = 10 stays small."""
        rng = np.random.default_rng(0)
        values = np.array([
            u_value(uniform_points(rng, 50), uniform_points(rng, 50), radii=[10.0])
            for _ in range(1000)
        ])
        assert np.mean(np.abs(values) <= 4.0) >= 0.95
        assert abs(values.mean()) < 0.5

    # -----------------------------------------------------------------------
    # (c) Attraction and segregation
    # -----------------------------------------------------------------------

    def test_colocated_cells_strongly_positive(self, rng):
        a = uniform_points(rng, 50)
        ids_a = np.array([f"a{i}" for i in range(50)])
        ids_b = np.array([f"b{i}" for i in range(50)])
        assert u_value(a, a.copy(), ids_i=ids_a, ids_j=ids_b) > 20

    def test_segregated_negative(self, rng):
        left = uniform_points(rng, 100, xmax=50.0)
        right = uniform_points(rng, 100, xmin=50.0)
        assert u_value(left, right) < 0

    # -----------------------------------------------------------------------
    # (d) Inhomogeneity correction
    # -----------------------------------------------------------------------

    def test_gradient_inflates_homogeneous_estimate(self):
        """Two independent types sharing a density gradient look attracted under CSR."""
        rng = np.random.default_rng(11)
        a, b = exponential_gradient(rng, 500), exponential_gradient(rng, 500)
        u_hom = u_value(a, b)
        u_inh = u_value(a, b,
                        intensity_i=kernel_intensity(a, WINDOW, 15.0),
                        intensity_j=kernel_intensity(b, WINDOW, 15.0))
        assert u_hom > 8
        assert abs(u_inh) < 0.5 * u_hom

    def test_wide_bandwidth_preserves_true_attraction(self):
        rng = np.random.default_rng(5)
        a = uniform_points(rng, 200)
        b = np.clip(a + rng.normal(0.0, 1.0, a.shape), 0.0, 100.0)
        u_hom = u_value(a, b)
        u_inh = u_value(a, b,
                        intensity_i=kernel_intensity(a, WINDOW, 50.0),
                        intensity_j=kernel_intensity(b, WINDOW, 50.0))
        assert u_hom > 0
        assert abs(u_inh - u_hom) / abs(u_hom) < 0.25

    def test_normalised_intensity_reciprocal_sum_is_area(self, rng):
        lam = normalise_intensity(rng.uniform(0.1, 5.0, 40), WINDOW.area)
        assert np.sum(1.0 / lam) == pytest.approx(WINDOW.area)

    def test_kernel_intensity_floor(self):
        """An isolated cell far from the others still gets a positive intensity."""
        pts = np.array([[1.0, 1.0], [99.0, 99.0]])
        lam = kernel_intensity(pts, WINDOW, 2.0)
        assert np.all(lam > 0)

    def test_kernel_intensity_rejects_bad_sigma(self):
        with pytest.raises(ConfigurationError):
            kernel_intensity(np.zeros((2, 2)), WINDOW, 0.0)

    # -----------------------------------------------------------------------
    # (e) Errors
    # -----------------------------------------------------------------------

    def test_empty_set_raises(self):
        with pytest.raises(InsufficientCellsError):
            cross_k_from_coords(np.empty((0, 2)), [[1, 1]], WINDOW, RADII)

    def test_single_shared_cell_raises(self):
        ids = np.array(["a"])
        with pytest.raises(InsufficientCellsError):
            cross_k_from_coords([[1, 1]], [[1, 1]], WINDOW, RADII, ids_i=ids, ids_j=ids)

    def test_degenerate_window_raises(self):
        with pytest.raises(DegenerateWindowError):
            cross_k_from_coords([[1, 1]], [[2, 2]], Window(0, 0, 10, 0), RADII)

    def test_bad_radii_raise(self):
        with pytest.raises(ConfigurationError):
            cross_k_from_coords([[1, 1]], [[2, 2]], WINDOW, [5, 3])


# ===========================================================================
# SECTION 4 — Table-level Ripley functions
# ===========================================================================


class TestTableFunctions:

    def test_cross_l_result(self, tissue_table):
        res = cross_l(tissue_table, "img1", "tumour", "cd8", radii=RADII)
        assert isinstance(res, RipleyResult)
        assert res.function_type == "cross-L"
        np.testing.assert_array_equal(res.csr_expected, res.r)
        assert res.summary_statistic > 0
        assert res.summary()["u"] == pytest.approx(res.summary_statistic)

    def test_default_radii_quarter_of_shortest_side(self, tissue_table):
        res = cross_l(tissue_table, "img1", "tumour", "cd4", n_steps=10)
        assert len(res.r) == 10
        assert res.r[-1] == pytest.approx(25.0, rel=0.01)

    def test_sigma_is_recorded(self, tissue_table):
        res = cross_l(tissue_table, "img1", "tumour", "cd8", radii=RADII, sigma=20.0)
        assert res.sigma == 20.0

    def test_missing_type_raises(self, tissue_table):
        with pytest.raises(InsufficientCellsError):
            cross_l(tissue_table, "img2", "tumour", "cd8", radii=RADII)

    def test_ripleys_l_uniform(self, rng):
        table = build_table({"a": uniform_points(rng, 300)}, window=WINDOW)
        res = ripleys_l(table, "img1", radii=RADII)
        assert res.function_type == "L"
        assert np.max(np.abs(res.deviation)) < 2.0

    def test_envelope_brackets_null(self, tissue_table):
        res = simulation_envelope(tissue_table, "img1", "cross-L", "tumour", "cd8",
                                  n_simulations=19, radii=RADII, seed=0)
        assert res.envelope_lo is not None
        assert np.all(res.envelope_lo <= res.envelope_hi)
        # Planted attraction sits above the label-permutation envelope
        assert np.sum(res.statistic > res.envelope_hi) >= 5

    def test_envelope_with_inhomogeneity_correction(self, tissue_table):
        res = simulation_envelope(tissue_table, "img1", "cross-L", "tumour", "cd8",
                                  n_simulations=19, radii=RADII, sigma=20.0, seed=0)
        assert res.sigma == 20.0
        assert np.all(np.isfinite(res.envelope_lo)) and np.all(np.isfinite(res.envelope_hi))
        assert np.all(res.envelope_lo <= res.envelope_hi)
        # Tight jitter around tumour cells survives the correction
        assert np.sum(res.statistic > res.envelope_hi) >= 3

    def test_univariate_envelope_with_sigma(self, rng):
        table = build_table({"a": uniform_points(rng, 200)}, window=WINDOW)
        res = simulation_envelope(table, "img1", "L", n_simulations=9, radii=RADII,
                                  sigma=30.0, seed=2)
        assert res.sigma == 30.0
        assert res.envelope_hi.shape == (len(RADII),)

    def test_envelope_does_not_modify_table(self, tissue_table):
        before = np.asarray(tissue_table.cell_types).copy()
        simulation_envelope(tissue_table, "img1", "cross-L", "tumour", "cd4",
                            n_simulations=5, radii=RADII, seed=1)
        np.testing.assert_array_equal(np.asarray(tissue_table.cell_types), before)

    def test_envelope_unknown_function(self, tissue_table):
        with pytest.raises(ValueError):
            simulation_envelope(tissue_table, "img1", "G", radii=RADII)


# ===========================================================================
# SECTION 5 — Kontextual
#
# img1 of tissue_table: tumour, cd4 and cd8 live in the right half, stroma
# everywhere. cd8 cells hug tumour cells, cd4 cells do not.
#   tumour → cd4 looks attracted against the whole image (both are confined
#   to the same half) but is depleted relative to T cells in general.
# ===========================================================================


class TestKontextual:

    def config(self, **kwargs):
        return SpatialStatConfig(radii=RADII, **kwargs)

    def test_context_reverses_sign(self, tissue_table, tcell_hierarchy):
        res = kontextual(tissue_table, "img1", "tumour", "cd4", "tcell",
                         hierarchy=tcell_hierarchy, config=self.config())
        assert isinstance(res, KontextualResult)
        assert res.original > 0
        assert res.kontextual < 0
        assert res.sign_flip

    def test_true_attraction_stays_positive(self, tissue_table, tcell_hierarchy):
        res = kontextual(tissue_table, "img1", "tumour", "cd8", "tcell",
                         hierarchy=tcell_hierarchy, config=self.config())
        assert res.kontextual > 0
        assert not res.sign_flip

    @pytest.mark.parametrize("mode", ["difference", "ratio"])
    def test_parent_equal_to_child_gives_zero(self, tissue_table, mode):
        res = kontextual(tissue_table, "img1", "tumour", "cd8", ["cd8"],
                         config=self.config(mode=mode))
        assert res.kontextual == 0.0
        # The raw value is the full-window cross-L summary, untouched by context
        raw = cross_l(tissue_table, "img1", "tumour", "cd8", radii=RADII)
        assert res.original == pytest.approx(raw.summary_statistic)
        assert res.original > 0

    def test_ratio_mode_sign_agrees_with_difference(self, tissue_table, tcell_hierarchy):
        diff = kontextual(tissue_table, "img1", "tumour", "cd4", "tcell",
                          hierarchy=tcell_hierarchy, config=self.config())
        ratio = kontextual(tissue_table, "img1", "tumour", "cd4", "tcell",
                           hierarchy=tcell_hierarchy, config=self.config(mode="ratio"))
        assert np.sign(ratio.kontextual) == np.sign(diff.kontextual)

    def test_curves_have_one_value_per_radius(self, tissue_table, tcell_hierarchy):
        res = kontextual(tissue_table, "img1", "tumour", "cd8", "tcell",
                         hierarchy=tcell_hierarchy, config=self.config())
        assert len(res.kontextual_curve) == len(RADII)
        assert res.kontextual == pytest.approx(res.kontextual_curve.sum())
        assert res.original == pytest.approx(res.original_curve.sum())

    def test_hierarchy_node_as_to_type_pools_population(self, tissue_table, tcell_hierarchy):
        res = kontextual(tissue_table, "img1", "stroma", "tcell", ["tcell", "cd4", "cd8"],
                         hierarchy=tcell_hierarchy, config=self.config())
        assert res.n_to == 400
        assert res.kontextual == 0.0

    def test_child_outside_parent_raises(self, tissue_table, tcell_hierarchy):
        with pytest.raises(InvalidHierarchyError):
            kontextual(tissue_table, "img1", "tumour", "stroma", "tcell",
                       hierarchy=tcell_hierarchy, config=self.config())

    def test_explicit_parent_without_child_raises(self, tissue_table):
        with pytest.raises(InvalidHierarchyError):
            kontextual(tissue_table, "img1", "tumour", "cd8", ["cd4"], config=self.config())

    def test_parent_label_needs_hierarchy(self, tissue_table):
        with pytest.raises(ConfigurationError):
            kontextual(tissue_table, "img1", "tumour", "cd8", "tcell", config=self.config())

    def test_absent_child_raises(self, tissue_table, tcell_hierarchy):
        with pytest.raises(InsufficientCellsError):
            kontextual(tissue_table, "img2", "tumour", "cd8", "tcell",
                       hierarchy=tcell_hierarchy, config=self.config())

    def test_collinear_parent_is_degenerate(self, rng):
        table = build_table({
            "a": uniform_points(rng, 30),
            "b": np.column_stack([rng.uniform(0, 100, 20), np.full(20, 40.0)]),
        }, window=WINDOW)
        with pytest.raises(DegenerateWindowError):
            kontextual(table, "img1", "a", "b", ["b"], config=self.config())

    def test_parent_window_is_bounding_box(self, tissue_table):
        image = tissue_table.image_view("img1")
        win = parent_window(image, ["cd4", "cd8"])
        coords, _ = image.points(["cd4", "cd8"])
        assert win.xmin == pytest.approx(coords[:, 0].min())
        assert win.ymax == pytest.approx(coords[:, 1].max())
        assert win.xmin >= 50.0

    def test_unknown_mode_raises(self, tissue_table):
        image = tissue_table.image_view("img1")
        with pytest.raises(ConfigurationError):
            kontextual_from_image(image, "tumour", "cd8", ["cd8"], RADII, mode="log")


# ===========================================================================
# SECTION 6 — Spatial domains
# ===========================================================================


class TestSpatialDomains:

    def test_profile_shape_and_columns(self, tissue_table):
        profiles = local_l_profiles(tissue_table, radii=(5, 10))
        assert profiles.shape == (tissue_table.n_cells, 4 * 2)
        assert "cd8_r5" in profiles.columns
        assert profiles.index.equals(tissue_table.cell_index)

    def test_absent_type_profiles_are_zero(self, tissue_table):
        profiles = local_l_profiles(tissue_table, radii=(5, 10))
        img2 = tissue_table.image_ids == "img2"
        assert np.all(profiles.loc[img2, ["cd8_r5", "cd8_r10"]].values == 0.0)

    def test_cd8_profile_high_around_tumour(self, tissue_table):
        profiles = local_l_profiles(tissue_table, radii=(5,), cell_types=["cd8"])
        types = np.asarray(tissue_table.cell_types)
        img1 = tissue_table.image_ids == "img1"
        tumour = profiles.loc[img1 & (types == "tumour"), "cd8_r5"].mean()
        stroma = profiles.loc[img1 & (types == "stroma"), "cd8_r5"].mean()
        assert tumour > stroma

    def test_domains_stored_and_summarised(self, tissue_table):
        res = spatial_domains(tissue_table, n_regions=3, radii=(5, 10), seed=0)
        assert set(res) == {"labels", "signatures", "composition", "profiles"}
        assert res["labels"].nunique() == 3
        assert "region" in tissue_table.cell_meta.columns
        np.testing.assert_allclose(res["composition"].sum(axis=1).values, 1.0)

    def test_store_false_leaves_table(self, tissue_table):
        spatial_domains(tissue_table, n_regions=2, radii=(5,), store=False)
        assert "region" not in tissue_table.cell_meta.columns
